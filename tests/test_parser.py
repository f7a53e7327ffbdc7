"""Tests for the Intel-syntax instruction parser."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
from x86_sim.errors import ParseError, ParseErrorKind
from x86_sim.instruction import Immediate, Instruction, Memory, Mnemonic, Register
from x86_sim.parser import InstructionParser, parse_instruction, parse_program


class TestParseBasics:
    """Test mnemonics, registers and immediates."""

    @pytest.fixture
    def parser(self):
        return InstructionParser()

    def test_register_register(self, parser):
        instr = parser.parse("add rax, rbx")
        assert instr == Instruction(Mnemonic.ADD, (Register("rax", 64), Register("rbx", 64)))

    def test_case_insensitive(self, parser):
        assert parser.parse("MOV EAX, ECX") == parser.parse("mov eax, ecx")

    def test_source_text_kept(self, parser):
        assert parser.parse("  nop  ").source == "nop"

    def test_immediate_decimal(self, parser):
        instr = parser.parse("mov rax, 10")
        assert instr.operands[1] == Immediate(10, 64)

    def test_immediate_hex(self, parser):
        instr = parser.parse("mov al, 0xF0")
        assert instr.operands[1] == Immediate(0xF0, 8)

    def test_immediate_binary(self, parser):
        instr = parser.parse("mov cl, 0b101")
        assert instr.operands[1] == Immediate(5, 8)

    def test_immediate_negative(self, parser):
        instr = parser.parse("sub ecx, -7")
        assert instr.operands[1] == Immediate(-7, 32)

    def test_shift_count_is_byte(self, parser):
        instr = parser.parse("shl rax, 4")
        assert instr.operands[1] == Immediate(4, 8)

    def test_shift_count_cl(self, parser):
        instr = parser.parse("sar edx, cl")
        assert instr.operands == (Register("edx", 32), Register("cl", 8))

    def test_push_immediate_is_qword(self, parser):
        assert parser.parse("push 1").operands[0] == Immediate(1, 64)

    def test_zero_operands(self, parser):
        assert parser.parse("cqo") == Instruction(Mnemonic.CQO)

    def test_aliases(self, parser):
        assert parser.parse("sal rax, 1").mnemonic == Mnemonic.SHL
        assert parser.parse("cmovz rax, rbx").mnemonic == Mnemonic.CMOVE
        assert parser.parse("cmovnz rax, rbx").mnemonic == Mnemonic.CMOVNE

    def test_high_byte_register(self, parser):
        assert parser.parse("mov ah, 1").operands[0] == Register("ah", 8)

    def test_xmm_registers(self, parser):
        instr = parser.parse("PADDD XMM0, xmm15")
        assert instr == Instruction(
            Mnemonic.PADDD, (Register("xmm0", 128), Register("xmm15", 128))
        )
        assert str(instr) == "paddd xmm0, xmm15"

    def test_unknown_xmm_register(self, parser):
        with pytest.raises(ParseError) as exc_info:
            parser.parse("paddd xmm0, xmm16")
        assert exc_info.value.kind == ParseErrorKind.UNKNOWN_REGISTER
        assert exc_info.value.token == "xmm16"

    def test_trailing_comment(self, parser):
        assert parser.parse("inc rax ; bump") == parser.parse("inc rax")
        assert parser.parse("inc rax # bump") == parser.parse("inc rax")

    def test_imul_three_operands(self, parser):
        instr = parser.parse("imul rax, rbx, 10")
        assert instr.operands[2] == Immediate(10, 64)


class TestParseMemory:
    """Test memory operand syntax and width inference."""

    def test_full_address(self):
        instr = parse_instruction("lea rax, [rbx + rcx*4 + 8]")
        assert instr.operands[1] == Memory("rbx", "rcx", 4, 8, 64)

    def test_scale_before_register(self):
        instr = parse_instruction("mov rax, [4*rcx + rbx]")
        assert instr.operands[1] == Memory("rbx", "rcx", 4, 0, 64)

    def test_negative_displacement(self):
        instr = parse_instruction("mov eax, [rbp - 0x10]")
        assert instr.operands[1] == Memory("rbp", None, 1, -0x10, 32)

    def test_absolute_address(self):
        instr = parse_instruction("mov rax, [0x1000]")
        assert instr.operands[1] == Memory(None, None, 1, 0x1000, 64)

    def test_two_plain_registers(self):
        instr = parse_instruction("mov rax, [rbx + rsi]")
        assert instr.operands[1] == Memory("rbx", "rsi", 1, 0, 64)

    def test_lone_scaled_index(self):
        instr = parse_instruction("lea rax, [rcx*8 + 0x10]")
        assert instr.operands[1] == Memory(None, "rcx", 8, 0x10, 64)

    def test_size_keyword(self):
        instr = parse_instruction("mov byte ptr [rax], 5")
        assert instr.operands == (Memory("rax", None, 1, 0, 8), Immediate(5, 8))

    def test_size_keyword_touching_bracket(self):
        instr = parse_instruction("inc dword[rbx]")
        assert instr.operands[0] == Memory("rbx", None, 1, 0, 32)
        assert parse_instruction("mov qword ptr[rax], 1").operands[0].width == 64

    def test_rsp_second_register_becomes_base(self):
        instr = parse_instruction("mov rax, [rbp + rsp]")
        assert instr.operands[1] == Memory("rsp", "rbp", 1, 0, 64)
        assert instr.operands[1] == parse_instruction("mov rax, [rsp + rbp]").operands[1]

    def test_xmm_does_not_size_memory(self):
        with pytest.raises(ParseError) as exc_info:
            parse_instruction("paddd xmm0, [rax]")
        assert exc_info.value.kind == ParseErrorKind.MALFORMED_OPERAND

    def test_size_keyword_without_ptr(self):
        instr = parse_instruction("inc dword [rax]")
        assert instr.operands[0].width == 32

    def test_width_from_register(self):
        instr = parse_instruction("mov [rsp + 8], bx")
        assert instr.operands[0] == Memory("rsp", None, 1, 8, 16)

    def test_push_pop_default_qword(self):
        assert parse_instruction("push [rax]").operands[0].width == 64
        assert parse_instruction("pop [rax]").operands[0].width == 64

    def test_movsxd_source_dword(self):
        assert parse_instruction("movsxd rax, [rbx]").operands[1].width == 32

    def test_movzx_needs_size(self):
        with pytest.raises(ParseError) as exc_info:
            parse_instruction("movzx eax, [rbx]")
        assert exc_info.value.kind == ParseErrorKind.MALFORMED_OPERAND

    def test_memory_immediate_needs_size(self):
        with pytest.raises(ParseError) as exc_info:
            parse_instruction("mov [rax], 5")
        assert exc_info.value.kind == ParseErrorKind.MALFORMED_OPERAND

    def test_str_round_trip(self):
        instr = parse_instruction("mov qword ptr [rbx+rcx*8-0x10], rax")
        assert str(instr) == "mov qword ptr [rbx+rcx*8-0x10], rax"
        assert parse_instruction(str(instr)) == instr


class TestParseErrors:
    """Test error kinds, tokens and positions."""

    def test_unknown_mnemonic(self):
        with pytest.raises(ParseError) as exc_info:
            parse_instruction("frob rax")
        err = exc_info.value
        assert err.kind == ParseErrorKind.UNKNOWN_MNEMONIC
        assert err.token == "frob"
        assert err.position == 0

    def test_control_transfer_rejected(self):
        with pytest.raises(ParseError) as exc_info:
            parse_instruction("jmp 0x10")
        assert exc_info.value.kind == ParseErrorKind.UNKNOWN_MNEMONIC
        assert "not supported" in exc_info.value.message

    def test_empty_line(self):
        with pytest.raises(ParseError) as exc_info:
            parse_instruction("   ; only a comment")
        assert exc_info.value.kind == ParseErrorKind.UNKNOWN_MNEMONIC

    def test_unknown_register(self):
        with pytest.raises(ParseError) as exc_info:
            parse_instruction("mov rax, rbz")
        err = exc_info.value
        assert err.kind == ParseErrorKind.UNKNOWN_REGISTER
        assert err.token == "rbz"
        assert err.position == 9

    def test_unknown_address_register(self):
        with pytest.raises(ParseError) as exc_info:
            parse_instruction("mov rax, [rqx]")
        assert exc_info.value.kind == ParseErrorKind.UNKNOWN_REGISTER

    def test_operand_count(self):
        with pytest.raises(ParseError) as exc_info:
            parse_instruction("add rax")
        assert exc_info.value.kind == ParseErrorKind.OPERAND_COUNT_MISMATCH

        with pytest.raises(ParseError) as exc_info:
            parse_instruction("nop rax")
        assert exc_info.value.kind == ParseErrorKind.OPERAND_COUNT_MISMATCH

    @pytest.mark.parametrize("text", [
        "mov rax, [rbx*3]",
        "mov rax, [rbx + rsp*2]",
        "mov rax, [rsp + rsp]",
        "mov rax, [xmm0]",
        "mov rax, [ebx]",
        "mov rax, [rbx",
        "mov rax, rbx]",
        "mov rax, [rbx + rcx + rdx]",
        "mov rax, [-rbx]",
        "mov rax, []",
        "mov 5, rax",
        "mov rax, 12abc",
        "mov rax,",
    ])
    def test_malformed_operand(self, text):
        with pytest.raises(ParseError) as exc_info:
            parse_instruction(text)
        assert exc_info.value.kind == ParseErrorKind.MALFORMED_OPERAND

    def test_error_str_names_token(self):
        with pytest.raises(ParseError) as exc_info:
            parse_instruction("mov rax, rbz")
        assert "'rbz'" in str(exc_info.value)
        assert "column 9" in str(exc_info.value)


class TestParseProgram:
    """Test multi-line splitting."""

    def test_drops_comments_and_blanks(self):
        source = """
            ; setup
            mov rax, 10   ; ten

            add rax, 5    # five
        """
        assert parse_program(source) == ["mov rax, 10", "add rax, 5"]

    def test_empty(self):
        assert parse_program("") == []
