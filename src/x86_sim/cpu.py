"""Multi-instruction runner and the Simulator session facade.

Pipeline for every line the user enters:
    TEXT -> PARSE -> INSTRUCTION -> ENCODE (bytes, advisory) -> EXECUTE -> STATE

Encoding and execution are independent consumers of the same Instruction:
an instruction the encoder cannot render is still executed, and its trace
entry carries the encode error instead of bytes.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .encoder import encode, format_bytes
from .errors import EncodeError, ExecError, ParseError, SimulatorError
from .instruction import Instruction
from .parser import parse_instruction, parse_program
from .registry import get_registry
from .state import (
    DEFAULT_MEMORY_SIZE,
    GPR_NAMES,
    XMM_NAMES,
    XMM_WIDTH,
    CPUState,
    lookup_register,
    xmm_index,
    xmm_lanes,
)

log = logging.getLogger(__name__)
log.addHandler(logging.NullHandler())

STATUS_OK = "ok"
STATUS_FAILED = "failed"

BYTES_PER_ROW = 16


@dataclass
class TraceEntry:
    """One executed (or attempted) instruction.

    Attributes:
        index: Position of the instruction in its run (0-indexed)
        instruction: The parsed instruction
        encoding: Machine code bytes, or None when encoding failed
        encode_error: Encoder message when the instruction has no encoding
        status: "ok" or "failed"
        error: The ExecError that aborted the instruction
        pre_state: Snapshot before execution
        post_state: Snapshot after execution (equal to pre_state on failure)
    """
    index: int
    instruction: Instruction
    encoding: Optional[bytes]
    encode_error: Optional[str]
    status: str
    error: Optional[ExecError]
    pre_state: dict
    post_state: dict

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def register_changes(self) -> Dict[str, Tuple[int, int]]:
        """Registers (full 64-bit cells and xmm) that changed: name -> (before, after)."""
        changes = {}
        for bank in ("registers", "xmm"):
            pre = self.pre_state[bank]
            post = self.post_state[bank]
            changes.update(
                (name, (pre[name], post[name])) for name in pre if pre[name] != post[name]
            )
        return changes

    def flag_changes(self) -> Dict[str, Tuple[bool, bool]]:
        pre = self.pre_state["flags"]
        post = self.post_state["flags"]
        return {name: (pre[name], post[name]) for name in pre if pre[name] != post[name]}


@dataclass
class RunReport:
    """Outcome of running a list of instructions.

    Attributes:
        entries: Trace of every attempted instruction, in order
        total: Number of instructions submitted
        failed_index: Index of the instruction that stopped the run
        error: Error that stopped the run (ExecError, or ParseError when
            the facade could not parse the program)
    """
    entries: List[TraceEntry] = field(default_factory=list)
    total: int = 0
    failed_index: Optional[int] = None
    error: Optional[SimulatorError] = None

    @property
    def completed(self) -> bool:
        return self.failed_index is None

    @property
    def not_attempted(self) -> int:
        """Instructions after the failure that were never executed."""
        if self.failed_index is None:
            return 0
        return self.total - self.failed_index - 1


def parse_and_encode(text: str) -> Tuple[Instruction, bytes]:
    """Parse one instruction and render its machine code.

    Raises:
        ParseError: If the text is not a valid instruction
        EncodeError: If the instruction has no supported encoding
    """
    instruction = parse_instruction(text)
    return instruction, encode(instruction)


def _try_encode(instruction: Instruction) -> Tuple[Optional[bytes], Optional[str]]:
    try:
        return encode(instruction), None
    except EncodeError as e:
        return None, str(e)


def execute_traced(instruction: Instruction, state: CPUState, index: int = 0) -> TraceEntry:
    """Encode and execute one instruction, recording a trace entry.

    ExecError is captured in the entry; the state is untouched in that case.
    """
    encoding, encode_error = _try_encode(instruction)
    pre_state = state.snapshot()
    try:
        get_registry().execute(state, instruction)
    except ExecError as e:
        return TraceEntry(
            index=index,
            instruction=instruction,
            encoding=encoding,
            encode_error=encode_error,
            status=STATUS_FAILED,
            error=e,
            pre_state=pre_state,
            post_state=state.snapshot(),
        )
    return TraceEntry(
        index=index,
        instruction=instruction,
        encoding=encoding,
        encode_error=encode_error,
        status=STATUS_OK,
        error=None,
        pre_state=pre_state,
        post_state=state.snapshot(),
    )


def run(instructions: Sequence[Instruction], state: CPUState) -> RunReport:
    """Execute instructions in order, stopping at the first ExecError.

    Effects of instructions before the failure remain; the failing
    instruction has no effect and later instructions are not attempted.

    Args:
        instructions: Parsed instructions
        state: State to execute against (mutated in place)

    Returns:
        RunReport with one entry per attempted instruction
    """
    report = RunReport(total=len(instructions))
    for index, instruction in enumerate(instructions):
        entry = execute_traced(instruction, state, index)
        report.entries.append(entry)
        if not entry.ok:
            report.failed_index = index
            report.error = entry.error
            log.warning(
                "run stopped at instruction %d (%s): %s; %d not attempted",
                index, instruction, entry.error, report.not_attempted
            )
            break
    return report


# =============================================================================
# Session facade
# =============================================================================

@dataclass
class AssembleResult:
    """Parse + encode outcome for one line (state is never touched)."""
    text: str
    instruction: Optional[Instruction] = None
    encoding: Optional[bytes] = None
    error: Optional[SimulatorError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def hex(self) -> str:
        return format_bytes(self.encoding) if self.encoding is not None else ""


@dataclass
class StepResult:
    """Outcome of one interactive line.

    Attributes:
        text: Line as entered
        entry: Trace entry, absent when the line did not parse
        error: ParseError or ExecError that prevented the effect
    """
    text: str
    entry: Optional[TraceEntry] = None
    error: Optional[SimulatorError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Simulator:
    """One interactive x86-64 session.

    Owns a single CPUState and an accumulated trace. The entry points
    (``assemble``, ``step``, ``run``) report ParseError, EncodeError and
    ExecError through their result objects and never raise them.

    Attributes:
        state: The session's CPU state
        trace: Every trace entry recorded since the last reset
    """

    def __init__(self, memory_size: int = DEFAULT_MEMORY_SIZE):
        """Initialize a session.

        Args:
            memory_size: Memory capacity in bytes
        """
        self.state = CPUState(memory_size=memory_size)
        self.trace: List[TraceEntry] = []

    def reset(self) -> None:
        """Zero registers, flags and memory and clear the trace."""
        self.state.reset()
        self.trace = []

    # =========================================================================
    # Entry points
    # =========================================================================

    def assemble(self, text: str) -> AssembleResult:
        """Parse and encode a line without executing it."""
        try:
            instruction = parse_instruction(text)
        except ParseError as e:
            return AssembleResult(text, error=e)
        try:
            return AssembleResult(text, instruction, encode(instruction))
        except EncodeError as e:
            return AssembleResult(text, instruction, error=e)

    def step(self, text: str) -> StepResult:
        """Parse, encode and execute one line."""
        try:
            instruction = parse_instruction(text)
        except ParseError as e:
            log.info("parse failed: %s", e)
            return StepResult(text, error=e)

        entry = execute_traced(instruction, self.state, index=len(self.trace))
        self.trace.append(entry)
        if not entry.ok:
            log.warning("%s: %s", instruction, entry.error)
        return StepResult(text, entry=entry, error=entry.error)

    def run(self, source: str) -> RunReport:
        """Run a multi-line block.

        Every line is parsed before anything executes, so a ParseError
        leaves the state untouched and is reported with the index of the
        offending line.
        """
        lines = parse_program(source)
        instructions = []
        for index, line in enumerate(lines):
            try:
                instructions.append(parse_instruction(line))
            except ParseError as e:
                log.warning("line %d not parsed: %s", index, e)
                return RunReport(total=len(lines), failed_index=index, error=e)

        report = run(instructions, self.state)
        self.trace.extend(report.entries)
        return report

    # =========================================================================
    # Inspection
    # =========================================================================

    def read_register(self, name: str) -> int:
        """Value of any register view.

        Raises:
            KeyError: If the register doesn't exist
        """
        return self.state.get_register(name)

    def read_memory(self, address: int, length: int) -> bytes:
        return self.state.read_memory(address, length)

    def write_memory(self, address: int, data: bytes) -> None:
        self.state.write_memory(address, data)

    def format_register(self, name: str, human_readable: bool = False) -> str:
        """Render one register the way the interactive prompt shows it.

        Args:
            name: Register view name
            human_readable: Decimal (with signed value when negative)
                instead of zero-padded hex; xmm registers list their dword
                lanes, lane 0 first

        Raises:
            KeyError: If the register doesn't exist
        """
        xmm = xmm_index(name)
        if xmm is not None:
            name = XMM_NAMES[xmm]
            value = self.state.xmm[xmm]
            if not human_readable:
                return f"{name}: {value:#0{XMM_WIDTH // 4 + 2}x}"
            return f"{name} = lanes [{', '.join(str(lane) for lane in xmm_lanes(value))}]"

        view = lookup_register(name)
        value = self.state.get_register(view.name)
        if not human_readable:
            return f"{view.name}: {value:#0{view.width // 4 + 2}x}"
        text = f"{view.name} = {value}"
        if value & (1 << (view.width - 1)):
            text += f" (signed {value - (1 << view.width)})"
        return text

    def dump_memory(self, address: int, size: int = BYTES_PER_ROW, fmt: str = "hex") -> str:
        """Hex or decimal dump, 16 bytes per row, ``??`` past the end.

        Args:
            address: Start address
            size: Number of bytes (rounded up to whole rows)
            fmt: "hex" or "decimal"

        Raises:
            ValueError: If fmt is not recognised
        """
        if fmt not in ("hex", "decimal"):
            raise ValueError(f"Unknown dump format: {fmt}")

        rows = max(1, -(-size // BYTES_PER_ROW))
        lines = [f"Memory dump at {address:#x}:"]
        for row in range(rows):
            row_address = address + row * BYTES_PER_ROW
            cells = []
            for offset in range(BYTES_PER_ROW):
                addr = row_address + offset
                if 0 <= addr < self.state.memory_size:
                    byte = self.state.memory[addr]
                    cells.append(f"{byte:02x}" if fmt == "hex" else f"{byte:3d}")
                else:
                    cells.append("??" if fmt == "hex" else " ??")
            lines.append(f"{row_address:#010x}:  " + " ".join(cells))
        return "\n".join(lines)

    def format_state(self) -> str:
        """Compact register, flag and xmm view."""
        registers = self.state.dump_registers()
        lines = []
        for i in range(0, len(GPR_NAMES), 4):
            names = GPR_NAMES[i:i + 4]
            lines.append("  ".join(f"{name:>3}={registers[name]:016x}" for name in names))
        flags = " ".join(f"{name}={int(value)}" for name, value in self.state.flags.items())
        lines.append(f"rip={self.state.rip}  rflags={self.state.rflags:#06x}  {flags}")
        xmm = self.state.dump_xmm()
        lines.append("xmm (dword lanes 3..0):")
        for i in range(0, len(XMM_NAMES), 2):
            cells = []
            for name in XMM_NAMES[i:i + 2]:
                lanes = " ".join(f"{lane:08x}" for lane in reversed(xmm_lanes(xmm[name])))
                cells.append(f"{name:>5}={lanes}")
            lines.append("  ".join(cells))
        return "\n".join(lines)

    def print_trace(self) -> None:
        """Print execution trace in human-readable format."""
        print("=" * 70)
        print("X86-SIM EXECUTION TRACE")
        print("=" * 70)

        for cycle, entry in enumerate(self.trace):
            status = "OK" if entry.ok else f"ERROR: {entry.error}"
            print(f"\n[{cycle}] {status}")
            print(f"  Instruction: {entry.instruction}")
            if entry.encoding is not None:
                print(f"  Bytes: {format_bytes(entry.encoding)}")
            else:
                print(f"  Bytes: <{entry.encode_error}>")

            changes = [
                f"{name}: {before:#x} → {after:#x}"
                for name, (before, after) in entry.register_changes().items()
            ]
            if changes:
                print(f"  Changes: {', '.join(changes)}")

            flags = [
                f"{name}: {int(before)} → {int(after)}"
                for name, (before, after) in entry.flag_changes().items()
            ]
            if flags:
                print(f"  Flags: {', '.join(flags)}")

        print("\n" + "=" * 70)
        print("FINAL STATE")
        print("=" * 70)
        print(self.format_state())

    def get_summary(self) -> Dict:
        """Get execution summary.

        Returns:
            Dictionary with execution statistics and final state
        """
        return {
            "executed": sum(1 for e in self.trace if e.ok),
            "registers": self.state.dump_registers(),
            "xmm": self.state.dump_xmm(),
            "flags": dict(self.state.flags),
            "rflags": self.state.rflags,
            "rip": self.state.rip,
            "trace_length": len(self.trace),
            "errors": [str(e.error) for e in self.trace if not e.ok],
        }
