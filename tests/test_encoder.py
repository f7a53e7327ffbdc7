"""Tests for the x86-64 machine code encoder."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
from x86_sim.encoder import encode, format_bytes
from x86_sim.errors import EncodeError, EncodeErrorKind
from x86_sim.instruction import Immediate, Instruction, Memory, Mnemonic, Register
from x86_sim.parser import parse_instruction


def assemble(text: str) -> str:
    return format_bytes(encode(parse_instruction(text)))


class TestFormatBytes:
    """Test hex rendering."""

    def test_format(self):
        assert format_bytes(b"\x48\x83\xc0\x05") == "48 83 c0 05"

    def test_empty(self):
        assert format_bytes(b"") == ""


class TestArithmeticEncoding:
    """Test the ALU group and the group-3 unary forms."""

    @pytest.mark.parametrize("text,expected", [
        ("add rax, 5", "48 83 c0 05"),
        ("add rax, rbx", "48 01 d8"),
        ("add r8, r9", "4d 01 c8"),
        ("and al, 0x0f", "24 0f"),
        ("add al, 200", "04 c8"),
        ("sub rsp, 0x10", "48 83 ec 10"),
        ("cmp eax, 0x1000", "3d 00 10 00 00"),
        ("add rax, 0x1000", "48 05 00 10 00 00"),
        ("add rbx, 0x1000", "48 81 c3 00 10 00 00"),
        ("add rax, [rbx+0x200]", "48 03 83 00 02 00 00"),
        ("xor eax, eax", "31 c0"),
        ("or cx, 1", "66 83 c9 01"),
        ("adc rdx, 0", "48 83 d2 00"),
        ("sbb bl, cl", "18 cb"),
        ("cmp byte ptr [rax], 1", "80 38 01"),
    ])
    def test_alu(self, text, expected):
        assert assemble(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("inc rax", "48 ff c0"),
        ("dec ecx", "ff c9"),
        ("inc byte ptr [rax]", "fe 00"),
        ("neg rax", "48 f7 d8"),
        ("not al", "f6 d0"),
        ("mul rbx", "48 f7 e3"),
        ("div rcx", "48 f7 f1"),
        ("idiv rcx", "48 f7 f9"),
        ("imul rbx", "48 f7 eb"),
    ])
    def test_unary(self, text, expected):
        assert assemble(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("imul rax, rbx", "48 0f af c3"),
        ("imul rax, rbx, 10", "48 6b c3 0a"),
        ("imul eax, ecx, 1000", "69 c1 e8 03 00 00"),
    ])
    def test_imul_forms(self, text, expected):
        assert assemble(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("test al, 1", "a8 01"),
        ("test rax, rbx", "48 85 d8"),
        ("test ecx, 0x100", "f7 c1 00 01 00 00"),
        ("test rax, [rbx]", "48 85 03"),
    ])
    def test_test(self, text, expected):
        assert assemble(text) == expected


class TestDataMovementEncoding:
    """Test mov, extension, lea, xchg and stack forms."""

    @pytest.mark.parametrize("text,expected", [
        ("mov rax, 10", "48 b8 0a 00 00 00 00 00 00 00"),
        ("mov rax, -1", "48 b8 ff ff ff ff ff ff ff ff"),
        ("mov eax, 1", "b8 01 00 00 00"),
        ("mov ax, 1", "66 b8 01 00"),
        ("mov r8d, 1", "41 b8 01 00 00 00"),
        ("mov ah, 1", "b4 01"),
        ("mov spl, 1", "40 b4 01"),
        ("mov r15b, al", "41 88 c7"),
        ("mov byte ptr [rax], 5", "c6 00 05"),
        ("mov dword ptr [rbx+8], 0x12345678", "c7 43 08 78 56 34 12"),
        ("mov qword ptr [rax], -1", "48 c7 00 ff ff ff ff"),
        ("mov [0x1000], eax", "89 04 25 00 10 00 00"),
    ])
    def test_mov(self, text, expected):
        assert assemble(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("movzx eax, bl", "0f b6 c3"),
        ("movzx rax, word ptr [rbx]", "48 0f b7 03"),
        ("movsx rax, word ptr [rbx]", "48 0f bf 03"),
        ("movsx ecx, al", "0f be c8"),
        ("movsxd rax, ecx", "48 63 c1"),
    ])
    def test_extend(self, text, expected):
        assert assemble(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("xchg rax, rbx", "48 93"),
        ("xchg rbx, rax", "48 93"),
        ("xchg r8, rax", "49 90"),
        ("xchg eax, eax", "87 c0"),
        ("xchg rcx, rdx", "48 87 d1"),
        ("xchg al, bl", "86 d8"),
        ("xchg [rax], rcx", "48 87 08"),
    ])
    def test_xchg(self, text, expected):
        assert assemble(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("push rax", "50"),
        ("push r12", "41 54"),
        ("push 1", "6a 01"),
        ("push 0x1000", "68 00 10 00 00"),
        ("push qword ptr [rbx]", "ff 33"),
        ("pop rbx", "5b"),
        ("pop r15", "41 5f"),
        ("pop qword ptr [rax]", "8f 00"),
    ])
    def test_stack(self, text, expected):
        assert assemble(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("cmove rax, rbx", "48 0f 44 c3"),
        ("cmovne ecx, [rdx]", "0f 45 0a"),
        ("cqo", "48 99"),
        ("cdq", "99"),
        ("nop", "90"),
    ])
    def test_misc(self, text, expected):
        assert assemble(text) == expected


class TestShiftEncoding:
    """Test shift and rotate forms."""

    @pytest.mark.parametrize("text,expected", [
        ("shl rax, 4", "48 c1 e0 04"),
        ("shr eax, 1", "d1 e8"),
        ("sar rdx, cl", "48 d3 fa"),
        ("rol al, 3", "c0 c0 03"),
        ("ror bx, 2", "66 c1 cb 02"),
        ("ror rax, 1", "48 d1 c8"),
        ("shl byte ptr [rax], cl", "d2 20"),
    ])
    def test_shifts(self, text, expected):
        assert assemble(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("bsf rax, rbx", "48 0f bc c3"),
        ("bsr ecx, edx", "0f bd ca"),
    ])
    def test_bit_scan(self, text, expected):
        assert assemble(text) == expected


class TestPackedEncoding:
    """Test the SSE2 packed add."""

    @pytest.mark.parametrize("text,expected", [
        ("paddd xmm0, xmm1", "66 0f fe c1"),
        ("paddd xmm7, xmm7", "66 0f fe ff"),
        ("paddd xmm8, xmm1", "66 44 0f fe c1"),
        ("paddd xmm1, xmm15", "66 41 0f fe cf"),
        ("paddd xmm9, xmm10", "66 45 0f fe ca"),
    ])
    def test_paddd(self, text, expected):
        assert assemble(text) == expected

    @pytest.mark.parametrize("text", [
        "mov rax, xmm0",
        "add xmm0, xmm1",
        "paddd rax, rbx",
        "paddd xmm0, 5",
    ])
    def test_xmm_misuse(self, text):
        with pytest.raises(EncodeError) as exc_info:
            encode(parse_instruction(text))
        assert exc_info.value.kind == EncodeErrorKind.UNSUPPORTED_FORM


class TestAddressing:
    """Test ModRM / SIB / displacement selection."""

    @pytest.mark.parametrize("text,expected", [
        ("mov rax, [0x1000]", "48 8b 04 25 00 10 00 00"),
        ("mov rax, [rsp]", "48 8b 04 24"),
        ("mov rax, [rbp]", "48 8b 45 00"),
        ("mov rax, [r13]", "49 8b 45 00"),
        ("mov [r12], rax", "49 89 04 24"),
        ("lea rax, [rbx+rcx*4+8]", "48 8d 44 8b 08"),
        ("lea rax, [rbp-8]", "48 8d 45 f8"),
        ("mov rax, [rbp+rsp]", "48 8b 04 2c"),
        ("mov rax, [rbx+r9*2]", "4a 8b 04 4b"),
        ("lea rax, [rcx*8+0x10]", "48 8d 04 cd 10 00 00 00"),
        ("mov eax, [rsp+0x80]", "8b 84 24 80 00 00 00"),
    ])
    def test_modrm(self, text, expected):
        assert assemble(text) == expected


class TestEncodeErrors:
    """Test forms without an encoding."""

    def test_64bit_immediate_out_of_range(self):
        with pytest.raises(EncodeError) as exc_info:
            encode(parse_instruction("add rax, 0x80000000"))
        assert exc_info.value.kind == EncodeErrorKind.IMMEDIATE_OUT_OF_RANGE

    def test_mov_memory_imm64_out_of_range(self):
        with pytest.raises(EncodeError) as exc_info:
            encode(parse_instruction("mov qword ptr [rax], 0x100000000"))
        assert exc_info.value.kind == EncodeErrorKind.IMMEDIATE_OUT_OF_RANGE

    def test_displacement_out_of_range(self):
        with pytest.raises(EncodeError) as exc_info:
            encode(parse_instruction("mov rax, [rbx + 0x100000000]"))
        assert exc_info.value.kind == EncodeErrorKind.IMMEDIATE_OUT_OF_RANGE

    def test_immediate_wider_than_operand(self):
        with pytest.raises(EncodeError) as exc_info:
            encode(parse_instruction("mov al, 0x100"))
        assert exc_info.value.kind == EncodeErrorKind.IMMEDIATE_OUT_OF_RANGE

    def test_high_byte_with_rex(self):
        with pytest.raises(EncodeError) as exc_info:
            encode(parse_instruction("mov ah, sil"))
        assert exc_info.value.kind == EncodeErrorKind.UNSUPPORTED_FORM

    def test_width_mismatch(self):
        with pytest.raises(EncodeError) as exc_info:
            encode(parse_instruction("mov rax, ebx"))
        assert exc_info.value.kind == EncodeErrorKind.UNSUPPORTED_FORM

    def test_shift_by_other_register(self):
        with pytest.raises(EncodeError) as exc_info:
            encode(parse_instruction("shl rax, dl"))
        assert exc_info.value.kind == EncodeErrorKind.UNSUPPORTED_FORM

    def test_memory_to_memory(self):
        instr = Instruction(
            Mnemonic.MOV,
            (Memory("rax", None, 1, 0, 64), Memory("rbx", None, 1, 0, 64))
        )
        with pytest.raises(EncodeError) as exc_info:
            encode(instr)
        assert exc_info.value.kind == EncodeErrorKind.UNSUPPORTED_FORM

    def test_lea_register_source(self):
        instr = Instruction(Mnemonic.LEA, (Register("rax", 64), Register("rbx", 64)))
        with pytest.raises(EncodeError) as exc_info:
            encode(instr)
        assert exc_info.value.kind == EncodeErrorKind.UNSUPPORTED_FORM

    def test_push_dword(self):
        instr = Instruction(Mnemonic.PUSH, (Register("eax", 32),))
        with pytest.raises(EncodeError) as exc_info:
            encode(instr)
        assert exc_info.value.kind == EncodeErrorKind.UNSUPPORTED_FORM

    def test_imul_factor_width(self):
        instr = Instruction(
            Mnemonic.IMUL,
            (Register("rax", 64), Register("rbx", 64), Immediate(3, 32))
        )
        with pytest.raises(EncodeError) as exc_info:
            encode(instr)
        assert exc_info.value.kind == EncodeErrorKind.UNSUPPORTED_FORM

    def test_error_message_names_instruction(self):
        with pytest.raises(EncodeError) as exc_info:
            encode(parse_instruction("mov rax, ebx"))
        assert "mov rax, ebx" in str(exc_info.value)
