"""Encoder: Instruction Model -> exact x86-64 machine code.

Byte layout of every emitted instruction:

    [66] [REX] opcode... [ModRM [SIB] [disp8|disp32]] [immediate]

    66   operand-size prefix, 16-bit forms only
    REX  0100WRXB, present when W (64-bit operand size), an extended
         register (r8..r15), or spl/bpl/sil/dil is used
         (xmm8..xmm15 set R or B the same way)
    ModRM  mod(2) reg(3) rm(3); SIB scale(2) index(3) base(3)

Form selection follows the usual assembler choices: sign-extended imm8 when
the immediate fits, accumulator short forms, ``REX.W B8+r io`` for
``mov r64, imm``. The encoder is a pure function of the instruction; it never
sees CPU state.
"""

from typing import Callable, Dict, Optional

from .alu import fits, mask, to_signed
from .errors import EncodeError, EncodeErrorKind
from .instruction import (
    Immediate,
    Instruction,
    Memory,
    Mnemonic,
    Operand,
    PACKED_MNEMONICS,
    Register,
)
from .state import REGISTER_VIEWS, XMM_WIDTH, RegisterView, xmm_index


OPERAND_SIZE_PREFIX = 0x66
REX = 0x40

_SCALE_BITS = {1: 0, 2: 1, 4: 2, 8: 3}

# /digit extensions
_ALU_DIGITS = {
    Mnemonic.ADD: 0, Mnemonic.OR: 1, Mnemonic.ADC: 2, Mnemonic.SBB: 3,
    Mnemonic.AND: 4, Mnemonic.SUB: 5, Mnemonic.XOR: 6, Mnemonic.CMP: 7,
}
_UNARY_DIGITS = {
    Mnemonic.NOT: 2, Mnemonic.NEG: 3, Mnemonic.MUL: 4, Mnemonic.IMUL: 5,
    Mnemonic.DIV: 6, Mnemonic.IDIV: 7,
}
_SHIFT_DIGITS = {
    Mnemonic.ROL: 0, Mnemonic.ROR: 1, Mnemonic.SHL: 4, Mnemonic.SHR: 5, Mnemonic.SAR: 7,
}
_TWO_BYTE_RM = {
    Mnemonic.CMOVE: b"\x0f\x44",
    Mnemonic.CMOVNE: b"\x0f\x45",
    Mnemonic.BSF: b"\x0f\xbc",
    Mnemonic.BSR: b"\x0f\xbd",
}


def _unsupported(instruction: Instruction, reason: str) -> EncodeError:
    return EncodeError(EncodeErrorKind.UNSUPPORTED_FORM, f"{instruction}: {reason}")


def _out_of_range(instruction: Instruction, reason: str) -> EncodeError:
    return EncodeError(EncodeErrorKind.IMMEDIATE_OUT_OF_RANGE, f"{instruction}: {reason}")


def _view(operand: Register) -> RegisterView:
    return REGISTER_VIEWS[operand.name]


def _low3(operand: Register) -> int:
    """Low three bits of the hardware register number (ah..bh are 4..7)."""
    view = _view(operand)
    return ((view.index + 4) if view.is_high_byte else view.index) & 7


def _is_accumulator(operand: Operand) -> bool:
    return isinstance(operand, Register) and _view(operand).index == 0 and not _view(operand).is_high_byte


def _fits_signed(value: int, bits: int) -> bool:
    return -(1 << (bits - 1)) <= value < (1 << (bits - 1))


def _le(value: int, size: int) -> bytes:
    """Little-endian two's complement bytes."""
    return (value & mask(size * 8)).to_bytes(size, "little")


# =============================================================================
# ModRM / SIB / REX
# =============================================================================

def _memory_modrm(instruction: Instruction, reg_field: int, operand: Memory) -> bytes:
    """ModRM + optional SIB + displacement for a memory operand."""
    disp = operand.displacement
    if not _fits_signed(disp, 32):
        raise _out_of_range(instruction, f"displacement {disp:#x} does not fit 32 bits")

    base = REGISTER_VIEWS[operand.base] if operand.base else None
    index = REGISTER_VIEWS[operand.index] if operand.index else None
    scale = _SCALE_BITS[operand.scale]
    index_bits = (index.index & 7) if index else 0b100

    if base is None:
        # Absolute / index-only: SIB with no base, always disp32
        modrm = (reg_field << 3) | 0b100
        sib = (scale << 6) | (index_bits << 3) | 0b101
        return bytes([modrm, sib]) + _le(disp, 4)

    base_bits = base.index & 7
    if disp == 0 and base_bits != 0b101:
        mod, disp_bytes = 0b00, b""
    elif _fits_signed(disp, 8):
        mod, disp_bytes = 0b01, _le(disp, 1)
    else:
        mod, disp_bytes = 0b10, _le(disp, 4)

    if index is None and base_bits != 0b100:
        return bytes([(mod << 6) | (reg_field << 3) | base_bits]) + disp_bytes

    sib = (scale << 6) | (index_bits << 3) | base_bits
    return bytes([(mod << 6) | (reg_field << 3) | 0b100, sib]) + disp_bytes


def _assemble(
    instruction: Instruction,
    opcode: bytes,
    width: int,
    rm: Optional[Operand] = None,
    reg: Optional[Register] = None,
    digit: Optional[int] = None,
    opcode_reg: Optional[Register] = None,
    imm: bytes = b"",
    default_64: bool = False
) -> bytes:
    """Emit prefixes, opcode, ModRM/SIB/displacement and immediate.

    Args:
        instruction: Instruction being encoded (for error messages)
        opcode: Opcode bytes
        width: Operand size selecting 66 / REX.W
        rm: Operand in the ModRM r/m field
        reg: Register in the ModRM reg field
        digit: /digit opcode extension for the reg field
        opcode_reg: Register folded into the low 3 opcode bits (+r forms)
        imm: Immediate bytes
        default_64: Operand size is 64 without REX.W (push/pop)
    """
    registers = [op for op in (rm, reg, opcode_reg) if isinstance(op, Register)]
    views = [_view(op) for op in registers]

    rex_w = width == 64 and not default_64
    rex_r = reg is not None and _view(reg).is_extended
    rex_x = isinstance(rm, Memory) and rm.index is not None and REGISTER_VIEWS[rm.index].is_extended
    rex_b = (
        (isinstance(rm, Register) and _view(rm).is_extended)
        or (isinstance(rm, Memory) and rm.base is not None and REGISTER_VIEWS[rm.base].is_extended)
        or (opcode_reg is not None and _view(opcode_reg).is_extended)
    )
    needs_rex = rex_w or rex_r or rex_x or rex_b or any(v.needs_rex for v in views)

    out = bytearray()
    if width == 16:
        out.append(OPERAND_SIZE_PREFIX)
    if needs_rex:
        if any(v.is_high_byte for v in views):
            raise _unsupported(instruction, "ah/bh/ch/dh cannot be encoded with a REX prefix")
        out.append(REX | (rex_w << 3) | (rex_r << 2) | (rex_x << 1) | rex_b)

    if opcode_reg is not None:
        out += opcode[:-1]
        out.append(opcode[-1] + _low3(opcode_reg))
    else:
        out += opcode

    if rm is not None:
        reg_field = _low3(reg) if reg is not None else (digit or 0)
        if isinstance(rm, Register):
            out.append(0xC0 | (reg_field << 3) | _low3(rm))
        else:
            out += _memory_modrm(instruction, reg_field, rm)

    out += imm
    return bytes(out)


# =============================================================================
# Operand checks
# =============================================================================

def _immediate_value(instruction: Instruction, imm: Immediate, width: int) -> int:
    """Signed value of an immediate at ``width`` bits, range checked."""
    if not fits(imm.value, width):
        raise _out_of_range(instruction, f"immediate {imm.value} does not fit {width} bits")
    return to_signed(imm.value, width)


def _imm32(instruction: Instruction, value: int, width: int) -> bytes:
    """Immediate bytes for iw/id forms (64-bit operands take a sign-extended imm32)."""
    if width == 16:
        return _le(value, 2)
    if not _fits_signed(value, 32):
        raise _out_of_range(instruction, f"immediate {value} is not a sign-extended 32-bit value")
    return _le(value, 4)


def _check_rm(instruction: Instruction, operand: Operand) -> None:
    if isinstance(operand, Immediate):
        raise _unsupported(instruction, "operand must be a register or memory")


def _check_binary(instruction: Instruction) -> None:
    dest, src = instruction.operands
    _check_rm(instruction, dest)
    if isinstance(dest, Memory) and isinstance(src, Memory):
        raise _unsupported(instruction, "memory-to-memory form does not exist")
    if dest.width != src.width:
        raise _unsupported(instruction, f"operand widths differ ({dest.width} vs {src.width})")


def _check_reg_dest(instruction: Instruction, operand: Operand, widths=(16, 32, 64)) -> None:
    if not isinstance(operand, Register) or operand.width not in widths:
        raise _unsupported(instruction, f"destination must be a {'/'.join(map(str, widths))}-bit register")


# =============================================================================
# Per-mnemonic encoders
# =============================================================================

def _encode_alu(instr: Instruction) -> bytes:
    """add/or/adc/sbb/and/sub/xor/cmp"""
    _check_binary(instr)
    dest, src = instr.operands
    digit = _ALU_DIGITS[instr.mnemonic]
    base = digit << 3
    width = dest.width
    byte_op = width == 8

    if isinstance(src, Register):
        return _assemble(instr, bytes([base + (0 if byte_op else 1)]), width, rm=dest, reg=src)
    if isinstance(src, Memory):
        return _assemble(instr, bytes([base + (2 if byte_op else 3)]), width, rm=src, reg=dest)

    value = _immediate_value(instr, src, width)
    if byte_op:
        if _is_accumulator(dest):
            return _assemble(instr, bytes([base + 4]), width, imm=_le(value, 1))
        return _assemble(instr, b"\x80", width, rm=dest, digit=digit, imm=_le(value, 1))
    if _fits_signed(value, 8):
        return _assemble(instr, b"\x83", width, rm=dest, digit=digit, imm=_le(value, 1))
    imm = _imm32(instr, value, width)
    if _is_accumulator(dest):
        return _assemble(instr, bytes([base + 5]), width, imm=imm)
    return _assemble(instr, b"\x81", width, rm=dest, digit=digit, imm=imm)


def _encode_test(instr: Instruction) -> bytes:
    _check_binary(instr)
    dest, src = instr.operands
    width = dest.width
    byte_op = width == 8
    opcode = b"\x84" if byte_op else b"\x85"

    if isinstance(src, Register):
        return _assemble(instr, opcode, width, rm=dest, reg=src)
    if isinstance(src, Memory):
        # test is commutative: encode as test r/m, r
        return _assemble(instr, opcode, width, rm=src, reg=dest)

    value = _immediate_value(instr, src, width)
    imm = _le(value, 1) if byte_op else _imm32(instr, value, width)
    if _is_accumulator(dest):
        return _assemble(instr, b"\xa8" if byte_op else b"\xa9", width, imm=imm)
    return _assemble(instr, b"\xf6" if byte_op else b"\xf7", width, rm=dest, digit=0, imm=imm)


def _encode_mov(instr: Instruction) -> bytes:
    _check_binary(instr)
    dest, src = instr.operands
    width = dest.width
    byte_op = width == 8

    if isinstance(src, Register):
        return _assemble(instr, b"\x88" if byte_op else b"\x89", width, rm=dest, reg=src)
    if isinstance(src, Memory):
        return _assemble(instr, b"\x8a" if byte_op else b"\x8b", width, rm=src, reg=dest)

    value = _immediate_value(instr, src, width)
    if isinstance(dest, Register):
        if byte_op:
            return _assemble(instr, b"\xb0", width, opcode_reg=dest, imm=_le(value, 1))
        return _assemble(instr, b"\xb8", width, opcode_reg=dest, imm=_le(value, width // 8))
    if byte_op:
        return _assemble(instr, b"\xc6", width, rm=dest, digit=0, imm=_le(value, 1))
    return _assemble(instr, b"\xc7", width, rm=dest, digit=0, imm=_imm32(instr, value, width))


def _encode_extend(instr: Instruction) -> bytes:
    """movzx / movsx / movsxd"""
    dest, src = instr.operands
    _check_rm(instr, src)
    if instr.mnemonic == Mnemonic.MOVSXD:
        _check_reg_dest(instr, dest, widths=(64,))
        if src.width != 32:
            raise _unsupported(instr, "movsxd source must be 32-bit")
        return _assemble(instr, b"\x63", 64, rm=src, reg=dest)

    _check_reg_dest(instr, dest)
    if src.width not in (8, 16) or src.width >= dest.width:
        raise _unsupported(instr, f"cannot extend {src.width} to {dest.width} bits")
    second = {
        (Mnemonic.MOVZX, 8): 0xB6, (Mnemonic.MOVZX, 16): 0xB7,
        (Mnemonic.MOVSX, 8): 0xBE, (Mnemonic.MOVSX, 16): 0xBF,
    }[(instr.mnemonic, src.width)]
    return _assemble(instr, bytes([0x0F, second]), dest.width, rm=src, reg=dest)


def _encode_lea(instr: Instruction) -> bytes:
    dest, src = instr.operands
    _check_reg_dest(instr, dest)
    if not isinstance(src, Memory):
        raise _unsupported(instr, "lea source must be a memory operand")
    return _assemble(instr, b"\x8d", dest.width, rm=src, reg=dest)


def _encode_xchg(instr: Instruction) -> bytes:
    first, second = instr.operands
    _check_rm(instr, second)
    _check_binary(instr)
    width = first.width
    if isinstance(first, Register) and isinstance(second, Register) and width != 8:
        # 90+r short form; xchg eax, eax needs 87 /r because 90 is nop
        other = second if _is_accumulator(first) else first if _is_accumulator(second) else None
        if other is not None and not (width == 32 and _is_accumulator(other)):
            return _assemble(instr, b"\x90", width, opcode_reg=other)

    opcode = b"\x86" if width == 8 else b"\x87"
    if isinstance(second, Register):
        return _assemble(instr, opcode, first.width, rm=first, reg=second)
    return _assemble(instr, opcode, first.width, rm=second, reg=first)


def _encode_push(instr: Instruction) -> bytes:
    (src,) = instr.operands
    if src.width != 64:
        raise _unsupported(instr, "only 64-bit push is supported")
    if isinstance(src, Register):
        return _assemble(instr, b"\x50", 64, opcode_reg=src, default_64=True)
    if isinstance(src, Memory):
        return _assemble(instr, b"\xff", 64, rm=src, digit=6, default_64=True)
    value = _immediate_value(instr, src, 64)
    if _fits_signed(value, 8):
        return _assemble(instr, b"\x6a", 64, imm=_le(value, 1), default_64=True)
    return _assemble(instr, b"\x68", 64, imm=_imm32(instr, value, 64), default_64=True)


def _encode_pop(instr: Instruction) -> bytes:
    (dest,) = instr.operands
    _check_rm(instr, dest)
    if dest.width != 64:
        raise _unsupported(instr, "only 64-bit pop is supported")
    if isinstance(dest, Register):
        return _assemble(instr, b"\x58", 64, opcode_reg=dest, default_64=True)
    return _assemble(instr, b"\x8f", 64, rm=dest, digit=0, default_64=True)


def _encode_reg_rm(instr: Instruction) -> bytes:
    """cmove/cmovne/bsf/bsr r, r/m"""
    dest, src = instr.operands
    _check_reg_dest(instr, dest)
    _check_rm(instr, src)
    if dest.width != src.width:
        raise _unsupported(instr, f"operand widths differ ({dest.width} vs {src.width})")
    return _assemble(instr, _TWO_BYTE_RM[instr.mnemonic], dest.width, rm=src, reg=dest)


def _encode_inc_dec(instr: Instruction) -> bytes:
    (dest,) = instr.operands
    _check_rm(instr, dest)
    digit = 0 if instr.mnemonic == Mnemonic.INC else 1
    return _assemble(instr, b"\xfe" if dest.width == 8 else b"\xff", dest.width, rm=dest, digit=digit)


def _encode_unary(instr: Instruction) -> bytes:
    """not/neg/mul/imul/div/idiv r/m (group 3)"""
    (operand,) = instr.operands
    _check_rm(instr, operand)
    opcode = b"\xf6" if operand.width == 8 else b"\xf7"
    return _assemble(instr, opcode, operand.width, rm=operand, digit=_UNARY_DIGITS[instr.mnemonic])


def _encode_imul(instr: Instruction) -> bytes:
    if len(instr.operands) == 1:
        return _encode_unary(instr)

    dest, src = instr.operands[0], instr.operands[1]
    _check_reg_dest(instr, dest)
    _check_rm(instr, src)
    if dest.width != src.width:
        raise _unsupported(instr, f"operand widths differ ({dest.width} vs {src.width})")
    if len(instr.operands) == 2:
        return _assemble(instr, b"\x0f\xaf", dest.width, rm=src, reg=dest)

    factor = instr.operands[2]
    if not isinstance(factor, Immediate) or factor.width != dest.width:
        raise _unsupported(instr, "third operand must be an immediate of the destination width")
    value = _immediate_value(instr, factor, dest.width)
    if _fits_signed(value, 8):
        return _assemble(instr, b"\x6b", dest.width, rm=src, reg=dest, imm=_le(value, 1))
    return _assemble(instr, b"\x69", dest.width, rm=src, reg=dest, imm=_imm32(instr, value, dest.width))


def _encode_shift(instr: Instruction) -> bytes:
    dest, count = instr.operands
    _check_rm(instr, dest)
    digit = _SHIFT_DIGITS[instr.mnemonic]
    byte_op = dest.width == 8

    if isinstance(count, Register):
        if count.name != "cl":
            raise _unsupported(instr, "shift count register must be cl")
        return _assemble(instr, b"\xd2" if byte_op else b"\xd3", dest.width, rm=dest, digit=digit)
    if not isinstance(count, Immediate):
        raise _unsupported(instr, "shift count must be an immediate or cl")

    value = _immediate_value(instr, count, 8) & 0xFF
    if value == 1:
        return _assemble(instr, b"\xd0" if byte_op else b"\xd1", dest.width, rm=dest, digit=digit)
    return _assemble(
        instr, b"\xc0" if byte_op else b"\xc1", dest.width, rm=dest, digit=digit, imm=bytes([value])
    )


def _encode_paddd(instr: Instruction) -> bytes:
    """66 [REX] 0F FE /r with both operands in xmm registers."""
    dest, src = instr.operands
    for operand in (dest, src):
        if not isinstance(operand, Register) or operand.width != XMM_WIDTH:
            raise _unsupported(instr, "paddd operands must be xmm registers")
    reg, rm = xmm_index(dest.name), xmm_index(src.name)

    out = bytearray([OPERAND_SIZE_PREFIX])
    if reg >= 8 or rm >= 8:
        out.append(REX | ((reg >= 8) << 2) | (rm >= 8))
    out += b"\x0f\xfe"
    out.append(0xC0 | ((reg & 7) << 3) | (rm & 7))
    return bytes(out)


def _encode_fixed(instr: Instruction) -> bytes:
    """cqo / cdq / nop"""
    return {
        Mnemonic.CQO: b"\x48\x99",
        Mnemonic.CDQ: b"\x99",
        Mnemonic.NOP: b"\x90",
    }[instr.mnemonic]


ENCODERS: Dict[Mnemonic, Callable[[Instruction], bytes]] = {
    Mnemonic.MOV: _encode_mov,
    Mnemonic.MOVZX: _encode_extend,
    Mnemonic.MOVSX: _encode_extend,
    Mnemonic.MOVSXD: _encode_extend,
    Mnemonic.LEA: _encode_lea,
    Mnemonic.XCHG: _encode_xchg,
    Mnemonic.PUSH: _encode_push,
    Mnemonic.POP: _encode_pop,
    Mnemonic.CMOVE: _encode_reg_rm,
    Mnemonic.CMOVNE: _encode_reg_rm,
    Mnemonic.CQO: _encode_fixed,
    Mnemonic.CDQ: _encode_fixed,
    Mnemonic.NOP: _encode_fixed,
    Mnemonic.ADD: _encode_alu,
    Mnemonic.ADC: _encode_alu,
    Mnemonic.SUB: _encode_alu,
    Mnemonic.SBB: _encode_alu,
    Mnemonic.INC: _encode_inc_dec,
    Mnemonic.DEC: _encode_inc_dec,
    Mnemonic.NEG: _encode_unary,
    Mnemonic.MUL: _encode_unary,
    Mnemonic.IMUL: _encode_imul,
    Mnemonic.DIV: _encode_unary,
    Mnemonic.IDIV: _encode_unary,
    Mnemonic.CMP: _encode_alu,
    Mnemonic.AND: _encode_alu,
    Mnemonic.OR: _encode_alu,
    Mnemonic.XOR: _encode_alu,
    Mnemonic.NOT: _encode_unary,
    Mnemonic.TEST: _encode_test,
    Mnemonic.SHL: _encode_shift,
    Mnemonic.SHR: _encode_shift,
    Mnemonic.SAR: _encode_shift,
    Mnemonic.ROL: _encode_shift,
    Mnemonic.ROR: _encode_shift,
    Mnemonic.BSF: _encode_reg_rm,
    Mnemonic.BSR: _encode_reg_rm,
    Mnemonic.PADDD: _encode_paddd,
}


def encode(instruction: Instruction) -> bytes:
    """Encode one instruction.

    Args:
        instruction: Parsed instruction

    Returns:
        Machine code bytes

    Raises:
        EncodeError: UNSUPPORTED_FORM or IMMEDIATE_OUT_OF_RANGE
    """
    encoder = ENCODERS.get(instruction.mnemonic)
    if encoder is None:
        raise _unsupported(instruction, "no encoding for this mnemonic")
    if instruction.mnemonic not in PACKED_MNEMONICS and any(
        isinstance(op, Register) and op.width == XMM_WIDTH for op in instruction.operands
    ):
        raise _unsupported(instruction, "xmm registers are only valid for packed instructions")
    return encoder(instruction)


def format_bytes(data: bytes) -> str:
    """Hex dump for trace lines, e.g. ``48 83 c0 05``."""
    return " ".join(f"{byte:02x}" for byte in data)
