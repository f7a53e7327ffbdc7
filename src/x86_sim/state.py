"""CPUState: register file, flags and memory for x86-sim.

State Components:
    - Registers: 16 general-purpose 64-bit cells (rax..r15), each reachable
      through 64/32/16/8-bit views that alias the same bits
    - RIP: advisory instruction counter (one step per executed instruction)
    - XMM: 16 128-bit SSE registers (xmm0..xmm15), each four packed dwords
    - Flags: CF, PF, AF, ZF, SF, OF
    - Memory: flat, zero-filled, little-endian bytearray of fixed capacity

Aliasing rules (x86-64):
    - writing a 32-bit view zero-extends into the 64-bit cell
    - writing a 16-bit or 8-bit view replaces only those bits
    - ah/ch/dh/bh address bits 8..15 of rax/rcx/rdx/rbx

The state is a plain mutable object owned by one session. Only the
execution engine mutates it during instruction execution.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import ExecError, ExecErrorKind


MASK64 = (1 << 64) - 1
MASK128 = (1 << 128) - 1

# 1 MiB, matching the original interactive assembler
DEFAULT_MEMORY_SIZE = 0x100000

FLAG_NAMES = ("CF", "PF", "AF", "ZF", "SF", "OF")

# Bit positions inside RFLAGS
FLAG_BITS = {"CF": 0, "PF": 2, "AF": 4, "ZF": 6, "SF": 7, "OF": 11}
RFLAGS_RESERVED = 0x2

# Cell order is the hardware register number used by ModRM/REX encoding.
GPR_NAMES = (
    "rax", "rcx", "rdx", "rbx", "rsp", "rbp", "rsi", "rdi",
    "r8", "r9", "r10", "r11", "r12", "r13", "r14", "r15",
)

_LEGACY_32 = ("eax", "ecx", "edx", "ebx", "esp", "ebp", "esi", "edi")
_LEGACY_16 = ("ax", "cx", "dx", "bx", "sp", "bp", "si", "di")
_LEGACY_8 = ("al", "cl", "dl", "bl", "spl", "bpl", "sil", "dil")
_HIGH_8 = ("ah", "ch", "dh", "bh")

RSP = GPR_NAMES.index("rsp")

XMM_WIDTH = 128
XMM_NAMES = tuple(f"xmm{i}" for i in range(16))
_XMM_INDEX = {name: index for index, name in enumerate(XMM_NAMES)}


@dataclass(frozen=True)
class RegisterView:
    """One named view onto a 64-bit register cell.

    Attributes:
        name: Register name as written in assembly (lowercase)
        index: Cell number 0-15 (also the hardware register number)
        width: View width in bits (8, 16, 32 or 64)
        shift: Bit offset of the view inside the cell (8 for ah..bh)
    """
    name: str
    index: int
    width: int
    shift: int = 0

    @property
    def mask(self) -> int:
        return (1 << self.width) - 1

    @property
    def is_extended(self) -> bool:
        """Register number needs a REX extension bit (r8..r15)."""
        return self.index >= 8

    @property
    def is_high_byte(self) -> bool:
        return self.shift == 8

    @property
    def needs_rex(self) -> bool:
        """spl/bpl/sil/dil are only addressable with a REX prefix."""
        return self.width == 8 and self.shift == 0 and 4 <= self.index < 8


def _build_register_views() -> Dict[str, RegisterView]:
    views: Dict[str, RegisterView] = {}
    for index, name in enumerate(GPR_NAMES):
        views[name] = RegisterView(name, index, 64)
        if index < 8:
            views[_LEGACY_32[index]] = RegisterView(_LEGACY_32[index], index, 32)
            views[_LEGACY_16[index]] = RegisterView(_LEGACY_16[index], index, 16)
            views[_LEGACY_8[index]] = RegisterView(_LEGACY_8[index], index, 8)
        else:
            views[name + "d"] = RegisterView(name + "d", index, 32)
            views[name + "w"] = RegisterView(name + "w", index, 16)
            views[name + "b"] = RegisterView(name + "b", index, 8)
    for index, name in enumerate(_HIGH_8):
        views[name] = RegisterView(name, index, 8, shift=8)
    return views


REGISTER_VIEWS: Dict[str, RegisterView] = _build_register_views()


def lookup_register(name: str) -> RegisterView:
    """Resolve a register name (case insensitive).

    Raises:
        KeyError: If the name is not a general-purpose register view
    """
    view = REGISTER_VIEWS.get(name.lower())
    if view is None:
        raise KeyError(f"Invalid register: {name}")
    return view


def xmm_index(name: str) -> Optional[int]:
    """Register number of an xmm name, or None for anything else."""
    return _XMM_INDEX.get(name.lower())


def xmm_lanes(value: int) -> List[int]:
    """Split a 128-bit value into its four dwords, lane 0 first."""
    return [(value >> (32 * lane)) & 0xFFFFFFFF for lane in range(4)]


def read_view(cell: int, view: RegisterView) -> int:
    """Extract a view's bits from a 64-bit cell."""
    return (cell >> view.shift) & view.mask


def write_view(cell: int, view: RegisterView, value: int) -> int:
    """Return the new 64-bit cell after writing ``value`` through ``view``."""
    value &= view.mask
    if view.width in (32, 64):
        # 32-bit writes zero-extend
        return value
    field_mask = view.mask << view.shift
    return (cell & ~field_mask & MASK64) | (value << view.shift)


@dataclass
class CPUState:
    """Mutable CPU state for one simulator session.

    Attributes:
        memory_size: Memory capacity in bytes
        registers: 16 64-bit register cells in hardware order
        flags: Dictionary of condition flags (CF, PF, AF, ZF, SF, OF)
        rip: Advisory instruction pointer
        memory: Zero-filled byte buffer of ``memory_size`` bytes
        xmm: 16 128-bit SSE register values
    """
    memory_size: int = DEFAULT_MEMORY_SIZE
    registers: Optional[List[int]] = None
    flags: Dict[str, bool] = field(default_factory=lambda: {
        name: False for name in FLAG_NAMES
    })
    rip: int = 0
    memory: Optional[bytearray] = None
    xmm: Optional[List[int]] = None

    def __post_init__(self):
        if self.memory_size <= 0:
            raise ValueError(f"memory_size must be positive, got {self.memory_size}")
        if self.registers is None:
            self.registers = [0] * len(GPR_NAMES)
            # Stack starts at the top of memory and grows down
            self.registers[RSP] = self.memory_size
        if self.memory is None:
            self.memory = bytearray(self.memory_size)
        if self.xmm is None:
            self.xmm = [0] * len(XMM_NAMES)

    # =========================================================================
    # Registers
    # =========================================================================

    def get_register(self, name: str) -> int:
        """Get the value of any register view (rax, eax, ax, al, ah, r9d, xmm3, ...).

        Raises:
            KeyError: If the register doesn't exist
        """
        xmm = xmm_index(name)
        if xmm is not None:
            return self.xmm[xmm]
        view = lookup_register(name)
        return read_view(self.registers[view.index], view)

    def set_register(self, name: str, value: int) -> None:
        """Write a register view, applying the x86-64 aliasing rules.

        The value is truncated to the view width.

        Raises:
            KeyError: If the register doesn't exist
        """
        xmm = xmm_index(name)
        if xmm is not None:
            self.xmm[xmm] = value & MASK128
            return
        view = lookup_register(name)
        self.registers[view.index] = write_view(self.registers[view.index], view, value)

    def dump_registers(self) -> Dict[str, int]:
        """Copy of all 64-bit register values keyed by name."""
        return {name: self.registers[index] for index, name in enumerate(GPR_NAMES)}

    def dump_xmm(self) -> Dict[str, int]:
        """Copy of all xmm register values keyed by name."""
        return dict(zip(XMM_NAMES, self.xmm))

    @property
    def rflags(self) -> int:
        """Composed RFLAGS value (bit 1 is reserved and always set)."""
        value = RFLAGS_RESERVED
        for name, bit in FLAG_BITS.items():
            if self.flags[name]:
                value |= 1 << bit
        return value

    # =========================================================================
    # Memory
    # =========================================================================

    def check_bounds(self, address: int, length: int) -> None:
        """Raise MEMORY_OUT_OF_BOUNDS unless [address, address+length) is mapped."""
        if address < 0 or length < 0 or address + length > self.memory_size:
            raise ExecError(
                ExecErrorKind.MEMORY_OUT_OF_BOUNDS,
                f"access of {length} byte(s) at {address:#x} outside "
                f"memory of {self.memory_size:#x} bytes"
            )

    def read_memory(self, address: int, length: int) -> bytes:
        """Read ``length`` bytes starting at ``address``.

        Raises:
            ExecError: MEMORY_OUT_OF_BOUNDS if any byte is outside memory
        """
        self.check_bounds(address, length)
        return bytes(self.memory[address:address + length])

    def write_memory(self, address: int, data: bytes) -> None:
        """Store ``data`` starting at ``address``.

        Raises:
            ExecError: MEMORY_OUT_OF_BOUNDS if any byte is outside memory
        """
        self.check_bounds(address, len(data))
        self.memory[address:address + len(data)] = data

    def read_int(self, address: int, size: int) -> int:
        """Read an unsigned little-endian integer of ``size`` bytes."""
        return int.from_bytes(self.read_memory(address, size), "little")

    def write_int(self, address: int, size: int, value: int) -> None:
        """Store ``value`` as a little-endian integer of ``size`` bytes."""
        mask = (1 << (size * 8)) - 1
        self.write_memory(address, (value & mask).to_bytes(size, "little"))

    # =========================================================================
    # Lifecycle / tracing
    # =========================================================================

    def reset(self) -> None:
        """Zero registers, xmm, flags and memory in place (rsp back to stack top)."""
        self.registers = [0] * len(GPR_NAMES)
        self.registers[RSP] = self.memory_size
        self.flags = {name: False for name in FLAG_NAMES}
        self.rip = 0
        self.memory = bytearray(self.memory_size)
        self.xmm = [0] * len(XMM_NAMES)

    def snapshot(self) -> dict:
        """Create a snapshot of registers, xmm, rip and flags for tracing.

        Returns:
            Dictionary of copied state components (memory excluded)
        """
        return {
            "registers": self.dump_registers(),
            "xmm": self.dump_xmm(),
            "rip": self.rip,
            "flags": dict(self.flags),
            "rflags": self.rflags,
        }

    def validate(self) -> bool:
        """Validate state integrity.

        Checks:
            - 16 register cells, each an unsigned 64-bit integer
            - 16 xmm values, each an unsigned 128-bit integer
            - rip is an unsigned 64-bit integer
            - Exactly the six known flags, all boolean
            - Memory buffer matches the configured capacity
        """
        if len(self.registers) != len(GPR_NAMES):
            return False
        for value in self.registers:
            if not isinstance(value, int) or not 0 <= value <= MASK64:
                return False

        if len(self.xmm) != len(XMM_NAMES):
            return False
        for value in self.xmm:
            if not isinstance(value, int) or not 0 <= value <= MASK128:
                return False

        if not 0 <= self.rip <= MASK64:
            return False

        if set(self.flags.keys()) != set(FLAG_NAMES):
            return False
        for flag_value in self.flags.values():
            if not isinstance(flag_value, bool):
                return False

        return len(self.memory) == self.memory_size

    def __str__(self) -> str:
        regs = " ".join(f"{name}={self.registers[i]:#x}" for i, name in enumerate(GPR_NAMES))
        flags = " ".join(f"{k}={int(v)}" for k, v in self.flags.items())
        return f"RIP={self.rip} {regs} {flags}"


def create_initial_state(memory_size: int = DEFAULT_MEMORY_SIZE) -> CPUState:
    """Create a fresh CPU state with zeroed registers, flags and memory."""
    return CPUState(memory_size=memory_size)
