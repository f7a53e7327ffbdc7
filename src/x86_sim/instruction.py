"""Instruction Model: the canonical mnemonic + typed operand representation.

Both the encoder and the execution engine consume this model; neither
mutates it. All classes are frozen dataclasses.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple, Union


class Mnemonic(Enum):
    """Closed set of supported operations."""
    # Data movement
    MOV = "mov"
    MOVZX = "movzx"
    MOVSX = "movsx"
    MOVSXD = "movsxd"
    LEA = "lea"
    XCHG = "xchg"
    PUSH = "push"
    POP = "pop"
    CMOVE = "cmove"
    CMOVNE = "cmovne"
    CQO = "cqo"
    CDQ = "cdq"
    NOP = "nop"

    # Arithmetic
    ADD = "add"
    ADC = "adc"
    SUB = "sub"
    SBB = "sbb"
    INC = "inc"
    DEC = "dec"
    NEG = "neg"
    MUL = "mul"
    IMUL = "imul"
    DIV = "div"
    IDIV = "idiv"
    CMP = "cmp"

    # Bitwise
    AND = "and"
    OR = "or"
    XOR = "xor"
    NOT = "not"
    TEST = "test"

    # Shifts and rotates
    SHL = "shl"
    SHR = "shr"
    SAR = "sar"
    ROL = "rol"
    ROR = "ror"

    # Bit scan
    BSF = "bsf"
    BSR = "bsr"

    # Packed integer (SSE2)
    PADDD = "paddd"


# Alternative spellings accepted by the parser
MNEMONIC_ALIASES: Dict[str, Mnemonic] = {
    "sal": Mnemonic.SHL,
    "cmovz": Mnemonic.CMOVE,
    "cmovnz": Mnemonic.CMOVNE,
}

# Allowed operand counts
OPERAND_COUNTS: Dict[Mnemonic, Tuple[int, ...]] = {
    Mnemonic.MOV: (2,),
    Mnemonic.MOVZX: (2,),
    Mnemonic.MOVSX: (2,),
    Mnemonic.MOVSXD: (2,),
    Mnemonic.LEA: (2,),
    Mnemonic.XCHG: (2,),
    Mnemonic.PUSH: (1,),
    Mnemonic.POP: (1,),
    Mnemonic.CMOVE: (2,),
    Mnemonic.CMOVNE: (2,),
    Mnemonic.CQO: (0,),
    Mnemonic.CDQ: (0,),
    Mnemonic.NOP: (0,),
    Mnemonic.ADD: (2,),
    Mnemonic.ADC: (2,),
    Mnemonic.SUB: (2,),
    Mnemonic.SBB: (2,),
    Mnemonic.INC: (1,),
    Mnemonic.DEC: (1,),
    Mnemonic.NEG: (1,),
    Mnemonic.MUL: (1,),
    Mnemonic.IMUL: (1, 2, 3),
    Mnemonic.DIV: (1,),
    Mnemonic.IDIV: (1,),
    Mnemonic.CMP: (2,),
    Mnemonic.AND: (2,),
    Mnemonic.OR: (2,),
    Mnemonic.XOR: (2,),
    Mnemonic.NOT: (1,),
    Mnemonic.TEST: (2,),
    Mnemonic.SHL: (2,),
    Mnemonic.SHR: (2,),
    Mnemonic.SAR: (2,),
    Mnemonic.ROL: (2,),
    Mnemonic.ROR: (2,),
    Mnemonic.BSF: (2,),
    Mnemonic.BSR: (2,),
    Mnemonic.PADDD: (2,),
}

SHIFT_MNEMONICS: FrozenSet[Mnemonic] = frozenset({
    Mnemonic.SHL, Mnemonic.SHR, Mnemonic.SAR, Mnemonic.ROL, Mnemonic.ROR,
})

PACKED_MNEMONICS: FrozenSet[Mnemonic] = frozenset({Mnemonic.PADDD})

WIDENING_MNEMONICS: FrozenSet[Mnemonic] = frozenset({
    Mnemonic.MOVZX, Mnemonic.MOVSX, Mnemonic.MOVSXD,
})

SIZE_KEYWORDS: Dict[str, int] = {"byte": 8, "word": 16, "dword": 32, "qword": 64}
_SIZE_NAMES = {width: name for name, width in SIZE_KEYWORDS.items()}


@dataclass(frozen=True)
class Register:
    """Register operand: a view of a general-purpose cell, or an xmm register (width 128)."""
    name: str
    width: int

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Immediate:
    """Immediate operand.

    Attributes:
        value: Literal value as written (may be negative)
        width: Operand width the value is applied at
    """
    value: int
    width: int

    def __str__(self) -> str:
        if self.value < 0:
            return f"-{-self.value:#x}"
        return f"{self.value:#x}"


@dataclass(frozen=True)
class Memory:
    """Memory operand addressing ``base + index*scale + displacement``.

    Attributes:
        base: 64-bit base register name, or None
        index: 64-bit index register name, or None
        scale: Index scale factor (1, 2, 4 or 8)
        displacement: Signed displacement
        width: Access width in bits
    """
    base: Optional[str]
    index: Optional[str]
    scale: int
    displacement: int
    width: int

    def __str__(self) -> str:
        parts = []
        if self.base:
            parts.append(self.base)
        if self.index:
            parts.append(f"{self.index}*{self.scale}")
        text = "+".join(parts)
        if self.displacement or not parts:
            if self.displacement < 0:
                text += f"-{-self.displacement:#x}"
            else:
                text += f"+{self.displacement:#x}" if parts else f"{self.displacement:#x}"
        return f"{_SIZE_NAMES[self.width]} ptr [{text}]"


Operand = Union[Register, Immediate, Memory]


@dataclass(frozen=True)
class Instruction:
    """A parsed instruction.

    Attributes:
        mnemonic: Operation
        operands: Ordered operands (destination first, Intel order)
        source: Original text (not part of equality)
    """
    mnemonic: Mnemonic
    operands: Tuple[Operand, ...] = ()
    source: str = field(default="", compare=False)

    def __str__(self) -> str:
        if not self.operands:
            return self.mnemonic.value
        return f"{self.mnemonic.value} " + ", ".join(str(op) for op in self.operands)
