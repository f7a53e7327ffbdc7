"""x86-sim: Interactive x86-64 Instruction-Set Simulator.

Type Intel-syntax assembly one line at a time; each line is parsed into an
immutable Instruction, rendered to its exact machine-code bytes, and executed
against a simulated CPU with aliased register views, six condition flags and
a flat little-endian memory.

Architecture:
    TEXT -> PARSER -> INSTRUCTION -+-> ENCODER  -> bytes
                                   +-> REGISTRY -> EXECUTE -> STATE
                                        [staged writes, atomic commit]

Modules:
    state: CPUState register file, flags and memory
    instruction: Mnemonic and operand model
    parser: Intel-syntax text -> Instruction
    encoder: Instruction -> machine code
    alu: Width-aware arithmetic and flag rules
    registry: Per-mnemonic execution handlers
    cpu: Multi-instruction runner and Simulator session
"""

__version__ = "0.1.0"
__author__ = "x86-sim Project"

from .errors import (
    EncodeError,
    EncodeErrorKind,
    ExecError,
    ExecErrorKind,
    ParseError,
    ParseErrorKind,
    SimulatorError,
)
from .state import CPUState, DEFAULT_MEMORY_SIZE
from .instruction import Immediate, Instruction, Memory, Mnemonic, Register
from .parser import InstructionParser, parse_instruction, parse_program
from .encoder import encode, format_bytes
from .registry import CPURegistry, execute
from .cpu import RunReport, Simulator, TraceEntry, parse_and_encode, run

__all__ = [
    "CPUState", "DEFAULT_MEMORY_SIZE",
    "Instruction", "Mnemonic", "Register", "Immediate", "Memory",
    "InstructionParser", "parse_instruction", "parse_program",
    "encode", "format_bytes",
    "CPURegistry", "execute",
    "Simulator", "TraceEntry", "RunReport", "run", "parse_and_encode",
    "SimulatorError", "ParseError", "ParseErrorKind",
    "EncodeError", "EncodeErrorKind", "ExecError", "ExecErrorKind",
]
