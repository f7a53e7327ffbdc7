"""Typed errors raised by the x86-sim core.

Three families, one per pipeline stage:
    ParseError:  malformed instruction text (no state touched)
    EncodeError: valid instruction with no byte encoding in the supported subset
    ExecError:   execution aborted; the CPU state is left exactly as it was

Each error carries a ``kind`` enum member so callers can branch on the
failure class without parsing messages.
"""

from enum import Enum
from typing import Optional


class ParseErrorKind(Enum):
    UNKNOWN_MNEMONIC = "unknown mnemonic"
    UNKNOWN_REGISTER = "unknown register"
    MALFORMED_OPERAND = "malformed operand"
    OPERAND_COUNT_MISMATCH = "operand count mismatch"


class EncodeErrorKind(Enum):
    UNSUPPORTED_FORM = "unsupported form"
    IMMEDIATE_OUT_OF_RANGE = "immediate out of range"


class ExecErrorKind(Enum):
    UNSUPPORTED_MNEMONIC = "unsupported mnemonic"
    DIVIDE_BY_ZERO = "divide by zero"
    DIVIDE_OVERFLOW = "divide overflow"
    MEMORY_OUT_OF_BOUNDS = "memory out of bounds"
    WIDTH_MISMATCH = "width mismatch"
    INVALID_OPERANDS = "invalid operands"


class SimulatorError(Exception):
    """Base class for every error the core raises on user input."""

    def __init__(self, kind: Enum, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class ParseError(SimulatorError):
    """Instruction text could not be parsed.

    Attributes:
        kind: ParseErrorKind
        token: Offending token as typed by the user
        position: Zero-based column of the token in the input line
    """

    def __init__(
        self,
        kind: ParseErrorKind,
        message: str,
        token: Optional[str] = None,
        position: Optional[int] = None
    ):
        super().__init__(kind, message)
        self.token = token
        self.position = position

    def __str__(self) -> str:
        text = f"{self.kind.value}: {self.message}"
        if self.token is not None:
            text += f" (token {self.token!r}"
            if self.position is not None:
                text += f" at column {self.position}"
            text += ")"
        return text


class EncodeError(SimulatorError):
    """Instruction has no encoding in the supported subset."""


class ExecError(SimulatorError):
    """Instruction execution aborted without applying any effect."""
