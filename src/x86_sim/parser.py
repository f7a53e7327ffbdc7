"""Parser: Intel-syntax instruction text -> Instruction Model.

Accepted syntax:
    mnemonic [operand {, operand}]        ; comment

    operand := register                   rax, r9d, ah, xmm3
             | immediate                  42, -7, 0x2a, 0b101010
             | [size [ptr]] [memory]      qword ptr [rbx + rcx*8 - 0x10]

Mnemonics and register names are case-insensitive. Every failure raises a
ParseError naming the offending token and its column.
"""

import re
from typing import List, Optional, Tuple

from .errors import ParseError, ParseErrorKind
from .instruction import (
    Immediate,
    Instruction,
    Memory,
    Mnemonic,
    MNEMONIC_ALIASES,
    OPERAND_COUNTS,
    Operand,
    Register,
    SHIFT_MNEMONICS,
    SIZE_KEYWORDS,
    WIDENING_MNEMONICS,
)
from .state import REGISTER_VIEWS, XMM_WIDTH, xmm_index


# Recognised x86 mnemonics this simulator deliberately does not execute
CONTROL_TRANSFER = frozenset({
    "jmp", "je", "jz", "jne", "jnz", "jg", "jge", "jl", "jle", "ja", "jae",
    "jb", "jbe", "js", "jns", "call", "ret", "loop",
})

VALID_SCALES = (1, 2, 4, 8)

_NUMBER_RE = re.compile(r'^[+-]?(0x[0-9a-f]+|0b[01]+|[0-9]+)$', re.IGNORECASE)
_IDENT_RE = re.compile(r'^[a-z_][a-z0-9_]*$', re.IGNORECASE)
_MEMORY_RE = re.compile(
    r'^(?:(byte|word|dword|qword)\s*(?:ptr\s*)?)?\[(.*)\]$',
    re.IGNORECASE | re.DOTALL
)
_TERM_RE = re.compile(r'[+-]?[^+-]+')

# Raw operand kinds produced before widths are resolved
_REG, _IMM, _MEM = "reg", "imm", "mem"


class InstructionParser:
    """Rule-based parser producing immutable Instruction objects.

    Attributes:
        aliases: Extra mnemonic spellings mapped to canonical mnemonics
    """

    def __init__(self):
        self.aliases = dict(MNEMONIC_ALIASES)

    def parse(self, text: str) -> Instruction:
        """Parse one instruction.

        Args:
            text: Instruction text (e.g. "add rax, [rbx+8]")

        Returns:
            Parsed Instruction

        Raises:
            ParseError: On any lexical or structural problem
        """
        line = re.sub(r'[;#].*$', '', text)
        match = re.match(r'\s*(\S+)', line)
        if not match:
            raise ParseError(ParseErrorKind.UNKNOWN_MNEMONIC, "Empty instruction", "", 0)

        token = match.group(1)
        mnemonic = self._parse_mnemonic(token, match.start(1))

        operands_text = line[match.end(1):]
        raw_operands = [
            self._parse_operand(op_text, match.end(1) + offset)
            for op_text, offset in self._split_operands(operands_text, match.end(1))
        ]

        allowed = OPERAND_COUNTS[mnemonic]
        if len(raw_operands) not in allowed:
            expected = " or ".join(str(n) for n in allowed)
            raise ParseError(
                ParseErrorKind.OPERAND_COUNT_MISMATCH,
                f"{mnemonic.value} takes {expected} operand(s), got {len(raw_operands)}",
                token,
                match.start(1)
            )

        operands = self._resolve_widths(mnemonic, raw_operands)
        return Instruction(mnemonic, tuple(operands), source=text.strip())

    # =========================================================================
    # Tokens
    # =========================================================================

    def _parse_mnemonic(self, token: str, position: int) -> Mnemonic:
        name = token.lower()
        if name in self.aliases:
            return self.aliases[name]
        try:
            return Mnemonic(name)
        except ValueError:
            pass
        if name in CONTROL_TRANSFER:
            message = f"Control transfer is not supported: {token}"
        else:
            message = f"Unknown instruction: {token}"
        raise ParseError(ParseErrorKind.UNKNOWN_MNEMONIC, message, token, position)

    def _split_operands(self, text: str, base: int) -> List[Tuple[str, int]]:
        """Split on commas outside brackets.

        Returns:
            List of (stripped operand text, column relative to ``base``)
        """
        if not text.strip():
            return []

        pieces = []
        depth = 0
        start = 0
        for i, ch in enumerate(text):
            if ch == "[":
                depth += 1
            elif ch == "]":
                depth -= 1
                if depth < 0:
                    raise ParseError(
                        ParseErrorKind.MALFORMED_OPERAND, "Unbalanced ']'", "]", base + i
                    )
            elif ch == "," and depth == 0:
                pieces.append((start, i))
                start = i + 1
        if depth != 0:
            raise ParseError(
                ParseErrorKind.MALFORMED_OPERAND, "Unbalanced '['", "[", base + start
            )
        pieces.append((start, len(text)))

        operands = []
        for begin, end in pieces:
            chunk = text[begin:end]
            stripped = chunk.strip()
            offset = begin + (len(chunk) - len(chunk.lstrip()))
            if not stripped:
                raise ParseError(
                    ParseErrorKind.MALFORMED_OPERAND, "Empty operand", "", base + offset
                )
            operands.append((stripped, offset))
        return operands

    def _parse_operand(self, text: str, position: int) -> tuple:
        if "[" in text or "]" in text:
            return self._parse_memory(text, position)

        first_word = text.split()[0].lower()
        if first_word in SIZE_KEYWORDS:
            raise ParseError(
                ParseErrorKind.MALFORMED_OPERAND,
                f"Size keyword must be followed by a memory operand: {text}",
                text,
                position
            )

        if _NUMBER_RE.match(text):
            return (_IMM, self._parse_immediate(text), position)

        if _IDENT_RE.match(text):
            if xmm_index(text) is not None:
                return (_REG, Register(text.lower(), XMM_WIDTH), position)
            view = REGISTER_VIEWS.get(text.lower())
            if view is None:
                raise ParseError(
                    ParseErrorKind.UNKNOWN_REGISTER, f"Unknown register: {text}", text, position
                )
            return (_REG, Register(view.name, view.width), position)

        raise ParseError(
            ParseErrorKind.MALFORMED_OPERAND, f"Cannot parse operand: {text}", text, position
        )

    def _parse_immediate(self, value: str) -> int:
        """Parse an immediate value (decimal, hex, or binary, optionally signed).

        Raises:
            ValueError: If value cannot be parsed
        """
        value = value.strip().upper()
        sign = 1
        if value[:1] in "+-":
            sign = -1 if value[0] == "-" else 1
            value = value[1:]

        # Hex: 0x prefix
        if value.startswith("0X"):
            return sign * int(value[2:], 16)

        # Binary: 0b prefix
        if value.startswith("0B"):
            return sign * int(value[2:], 2)

        return sign * int(value)

    def _parse_memory(self, text: str, position: int) -> tuple:
        match = _MEMORY_RE.match(text)
        if not match:
            raise ParseError(
                ParseErrorKind.MALFORMED_OPERAND, f"Malformed memory operand: {text}", text, position
            )

        width = SIZE_KEYWORDS[match.group(1).lower()] if match.group(1) else None
        inner = re.sub(r'\s+', '', match.group(2))
        terms = _TERM_RE.findall(inner)
        if not inner or "".join(terms) != inner:
            raise ParseError(
                ParseErrorKind.MALFORMED_OPERAND, f"Malformed address expression: {text}", text, position
            )

        plain: List[str] = []
        scaled: List[Tuple[str, int]] = []
        displacement = 0
        has_displacement = False

        for term in terms:
            negative = term.startswith("-")
            body = term.lstrip("+-")
            if "*" in body:
                factors = body.split("*")
                if len(factors) != 2:
                    raise ParseError(
                        ParseErrorKind.MALFORMED_OPERAND, f"Malformed scaled index: {body}", body, position
                    )
                if _NUMBER_RE.match(factors[0]):
                    scale_text, reg_text = factors
                else:
                    reg_text, scale_text = factors
                if negative or not _NUMBER_RE.match(scale_text):
                    raise ParseError(
                        ParseErrorKind.MALFORMED_OPERAND, f"Malformed scaled index: {body}", body, position
                    )
                scale = self._parse_immediate(scale_text)
                if scale not in VALID_SCALES:
                    raise ParseError(
                        ParseErrorKind.MALFORMED_OPERAND,
                        f"Scale must be 1, 2, 4 or 8, got {scale}",
                        scale_text,
                        position
                    )
                scaled.append((self._address_register(reg_text, position), scale))
            elif _NUMBER_RE.match(body):
                value = self._parse_immediate(body)
                displacement += -value if negative else value
                has_displacement = True
            else:
                if negative:
                    raise ParseError(
                        ParseErrorKind.MALFORMED_OPERAND,
                        f"Registers cannot be subtracted: {term}",
                        term,
                        position
                    )
                plain.append(self._address_register(body, position))

        if len(scaled) > 1 or len(plain) + len(scaled) > 2:
            raise ParseError(
                ParseErrorKind.MALFORMED_OPERAND, f"Too many address registers: {text}", text, position
            )

        base: Optional[str] = None
        index: Optional[str] = None
        scale = 1
        if scaled:
            index, scale = scaled[0]
            base = plain[0] if plain else None
            if base is None and scale == 1:
                base, index = index, None
        elif plain:
            base = plain[0]
            index = plain[1] if len(plain) > 1 else None

        if base is None and not has_displacement:
            raise ParseError(
                ParseErrorKind.MALFORMED_OPERAND,
                f"Memory operand needs a base register or displacement: {text}",
                text,
                position
            )
        if index == "rsp" and scale == 1 and base != "rsp":
            # [rbp+rsp] means the same as [rsp+rbp]
            base, index = index, base
        if index == "rsp":
            raise ParseError(
                ParseErrorKind.MALFORMED_OPERAND, "rsp cannot be used as an index", "rsp", position
            )

        return (_MEM, (base, index, scale, displacement, width), position)

    def _address_register(self, name: str, position: int) -> str:
        if not _IDENT_RE.match(name):
            raise ParseError(
                ParseErrorKind.MALFORMED_OPERAND, f"Malformed address term: {name}", name, position
            )
        view = REGISTER_VIEWS.get(name.lower())
        if view is None and xmm_index(name) is None:
            raise ParseError(
                ParseErrorKind.UNKNOWN_REGISTER, f"Unknown register: {name}", name, position
            )
        if view is None or view.width != 64:
            raise ParseError(
                ParseErrorKind.MALFORMED_OPERAND,
                f"Address registers must be 64-bit: {name}",
                name,
                position
            )
        return view.name

    # =========================================================================
    # Width resolution
    # =========================================================================

    def _resolve_widths(self, mnemonic: Mnemonic, raw_operands: List[tuple]) -> List[Operand]:
        """Assign widths to memory and immediate operands."""
        register_widths = [
            op[1].width for i, op in enumerate(raw_operands)
            if op[0] == _REG and op[1].width != XMM_WIDTH
            and not (mnemonic in SHIFT_MNEMONICS and i == 1)
        ]

        resolved: List[Operand] = []
        for i, (kind, payload, position) in enumerate(raw_operands):
            if kind == _REG:
                resolved.append(payload)
            elif kind == _MEM:
                base, index, scale, displacement, width = payload
                if width is None:
                    width = self._infer_memory_width(mnemonic, i, raw_operands, register_widths)
                if width is None:
                    raise ParseError(
                        ParseErrorKind.MALFORMED_OPERAND,
                        "Operand size not specified; use byte/word/dword/qword ptr",
                        "[",
                        position
                    )
                resolved.append(Memory(base, index, scale, displacement, width))
            else:
                resolved.append((kind, payload, position))

        final: List[Operand] = []
        for i, operand in enumerate(resolved):
            if isinstance(operand, tuple):
                _, value, position = operand
                if mnemonic in SHIFT_MNEMONICS and i == 1:
                    width = 8
                elif mnemonic == Mnemonic.PUSH:
                    width = 64
                elif i == 0 or isinstance(resolved[0], tuple):
                    raise ParseError(
                        ParseErrorKind.MALFORMED_OPERAND,
                        f"Destination cannot be an immediate: {value}",
                        str(value),
                        position
                    )
                else:
                    width = resolved[0].width
                final.append(Immediate(value, width))
            else:
                final.append(operand)
        return final

    def _infer_memory_width(
        self,
        mnemonic: Mnemonic,
        position: int,
        raw_operands: List[tuple],
        register_widths: List[int]
    ) -> Optional[int]:
        if mnemonic in (Mnemonic.PUSH, Mnemonic.POP):
            return 64
        if mnemonic == Mnemonic.MOVSXD and position == 1:
            return 32
        if mnemonic in WIDENING_MNEMONICS and position == 1:
            return None
        if mnemonic == Mnemonic.LEA:
            return register_widths[0] if register_widths else 64
        if mnemonic in SHIFT_MNEMONICS:
            return None
        if register_widths:
            return register_widths[0]
        return None


_default_parser = InstructionParser()


def parse_instruction(text: str) -> Instruction:
    """Parse one instruction with the default parser.

    Raises:
        ParseError: If the text is not a valid instruction
    """
    return _default_parser.parse(text)


def parse_program(source: str) -> List[str]:
    """Split a multi-line block into instruction lines.

    Handles:
        - Comments (starting with ; or #)
        - Blank lines

    Args:
        source: Assembly source code

    Returns:
        List of instruction strings, in order
    """
    instructions = []

    for line in source.split("\n"):
        # Remove comments
        line = re.sub(r'[;#].*$', '', line).strip()

        if not line:
            continue

        instructions.append(line)

    return instructions
