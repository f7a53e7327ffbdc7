"""CPURegistry: per-mnemonic semantic handlers for x86-sim.

Each supported Mnemonic maps to one handler. Handlers never touch the
CPUState directly: they read through and write into an ExecutionContext,
which stages register, flag and memory writes. The registry commits the
staged writes only after the handler returns, so an instruction that raises
ExecError leaves the state exactly as it found it.

Handler signature: (ExecutionContext, Instruction) -> None
"""

import logging
from typing import Callable, Dict, Optional

from . import alu
from .errors import ExecError, ExecErrorKind
from .instruction import (
    Immediate,
    Instruction,
    Memory,
    Mnemonic,
    OPERAND_COUNTS,
    Operand,
    PACKED_MNEMONICS,
    Register,
)
from .state import (
    MASK64,
    XMM_WIDTH,
    CPUState,
    lookup_register,
    read_view,
    write_view,
    xmm_index,
    xmm_lanes,
)

log = logging.getLogger(__name__)
log.addHandler(logging.NullHandler())

Handler = Callable[["ExecutionContext", Instruction], None]

# Implicit operands of mul/imul/div/idiv by width: (low, high)
_ACCUMULATORS = {
    8: ("al", "ah"),
    16: ("ax", "dx"),
    32: ("eax", "edx"),
    64: ("rax", "rdx"),
}


class ExecutionContext:
    """Staging layer between a handler and the CPU state.

    Reads see earlier staged writes of the same instruction; nothing reaches
    the state until ``commit``.
    """

    def __init__(self, state: CPUState):
        self.state = state
        self._registers: Dict[int, int] = {}
        self._xmm: Dict[int, int] = {}
        self._flags: Dict[str, bool] = {}
        self._memory: Dict[int, int] = {}

    # Registers ---------------------------------------------------------------

    def read_register(self, name: str) -> int:
        view = lookup_register(name)
        cell = self._registers.get(view.index, self.state.registers[view.index])
        return read_view(cell, view)

    def write_register(self, name: str, value: int) -> None:
        view = lookup_register(name)
        cell = self._registers.get(view.index, self.state.registers[view.index])
        self._registers[view.index] = write_view(cell, view, value)

    def read_xmm(self, name: str) -> int:
        index = xmm_index(name)
        return self._xmm.get(index, self.state.xmm[index])

    def write_xmm(self, name: str, value: int) -> None:
        self._xmm[xmm_index(name)] = value & alu.mask(XMM_WIDTH)

    # Memory ------------------------------------------------------------------

    def read_memory(self, address: int, size: int) -> int:
        """Little-endian read of ``size`` bytes."""
        self.state.check_bounds(address, size)
        data = bytes(
            self._memory.get(addr, self.state.memory[addr])
            for addr in range(address, address + size)
        )
        return int.from_bytes(data, "little")

    def write_memory(self, address: int, size: int, value: int) -> None:
        """Little-endian write of ``size`` bytes."""
        self.state.check_bounds(address, size)
        data = (value & alu.mask(size * 8)).to_bytes(size, "little")
        for offset, byte in enumerate(data):
            self._memory[address + offset] = byte

    def effective_address(self, operand: Memory) -> int:
        address = operand.displacement
        if operand.base:
            address += self.read_register(operand.base)
        if operand.index:
            address += self.read_register(operand.index) * operand.scale
        return address & MASK64

    # Flags -------------------------------------------------------------------

    def flag(self, name: str) -> bool:
        return self._flags.get(name, self.state.flags[name])

    def set_flags(self, flags: Dict[str, bool]) -> None:
        self._flags.update(flags)

    # Operands ----------------------------------------------------------------

    def read(self, operand: Operand) -> int:
        """Unsigned operand value at the operand's width."""
        if isinstance(operand, Register):
            if operand.width == XMM_WIDTH:
                return self.read_xmm(operand.name)
            return self.read_register(operand.name)
        if isinstance(operand, Immediate):
            return operand.value & alu.mask(operand.width)
        return self.read_memory(self.effective_address(operand), operand.width // 8)

    def write(self, operand: Operand, value: int) -> None:
        if isinstance(operand, Register):
            if operand.width == XMM_WIDTH:
                self.write_xmm(operand.name, value)
            else:
                self.write_register(operand.name, value)
        elif isinstance(operand, Memory):
            self.write_memory(self.effective_address(operand), operand.width // 8, value)
        else:
            raise ExecError(ExecErrorKind.INVALID_OPERANDS, f"Cannot write to immediate {operand}")

    def commit(self) -> None:
        """Apply all staged writes and advance rip."""
        for index, cell in self._registers.items():
            self.state.registers[index] = cell
        for index, value in self._xmm.items():
            self.state.xmm[index] = value
        self.state.flags.update(self._flags)
        for address, byte in self._memory.items():
            self.state.memory[address] = byte
        self.state.rip = (self.state.rip + 1) & MASK64


# =============================================================================
# Operand validation
# =============================================================================

def _invalid(instruction: Instruction, reason: str) -> ExecError:
    return ExecError(ExecErrorKind.INVALID_OPERANDS, f"{instruction}: {reason}")


def _width_mismatch(instruction: Instruction, reason: str) -> ExecError:
    return ExecError(ExecErrorKind.WIDTH_MISMATCH, f"{instruction}: {reason}")


def _require_rm(instruction: Instruction, operand: Operand) -> None:
    if isinstance(operand, Immediate):
        raise _invalid(instruction, "operand must be a register or memory")


def _require_register(instruction: Instruction, operand: Operand, widths=(16, 32, 64)) -> None:
    if not isinstance(operand, Register):
        raise _invalid(instruction, "destination must be a register")
    if operand.width not in widths:
        raise _width_mismatch(instruction, f"{operand.width}-bit register not allowed")


def _require_same_width(instruction: Instruction, first: Operand, second: Operand) -> None:
    if first.width != second.width:
        raise _width_mismatch(
            instruction, f"operand widths differ ({first.width} vs {second.width})"
        )


def _check_binary(instruction: Instruction) -> None:
    """dst r/m, src r/m/imm of one width, at most one memory operand."""
    dest, src = instruction.operands
    _require_rm(instruction, dest)
    if isinstance(dest, Memory) and isinstance(src, Memory):
        raise _invalid(instruction, "two memory operands")
    _require_same_width(instruction, dest, src)


class CPURegistry:
    """Verified registry of x86 semantic handlers.

    The registry is frozen after initialization to ensure
    no runtime modifications can occur.

    Attributes:
        _primitives: Dictionary mapping mnemonics to handler functions
        _frozen: Whether the registry is locked against modifications
    """

    def __init__(self):
        """Initialize registry with all instruction handlers."""
        self._primitives: Dict[Mnemonic, Handler] = {}
        self._frozen = False
        self._register_all_primitives()
        self.freeze()

    def _register_all_primitives(self) -> None:
        """Register all instruction handlers."""
        # Data movement
        self.register(Mnemonic.MOV, self._op_mov)
        self.register(Mnemonic.MOVZX, self._op_movzx)
        self.register(Mnemonic.MOVSX, self._op_movsx)
        self.register(Mnemonic.MOVSXD, self._op_movsx)
        self.register(Mnemonic.LEA, self._op_lea)
        self.register(Mnemonic.XCHG, self._op_xchg)
        self.register(Mnemonic.PUSH, self._op_push)
        self.register(Mnemonic.POP, self._op_pop)
        self.register(Mnemonic.CMOVE, self._op_cmov)
        self.register(Mnemonic.CMOVNE, self._op_cmov)
        self.register(Mnemonic.CQO, self._op_sign_extend_accumulator)
        self.register(Mnemonic.CDQ, self._op_sign_extend_accumulator)
        self.register(Mnemonic.NOP, self._op_nop)

        # Arithmetic
        self.register(Mnemonic.ADD, self._op_add)
        self.register(Mnemonic.ADC, self._op_add)
        self.register(Mnemonic.SUB, self._op_sub)
        self.register(Mnemonic.SBB, self._op_sub)
        self.register(Mnemonic.CMP, self._op_sub)
        self.register(Mnemonic.INC, self._op_inc_dec)
        self.register(Mnemonic.DEC, self._op_inc_dec)
        self.register(Mnemonic.NEG, self._op_neg)
        self.register(Mnemonic.MUL, self._op_mul)
        self.register(Mnemonic.IMUL, self._op_imul)
        self.register(Mnemonic.DIV, self._op_div)
        self.register(Mnemonic.IDIV, self._op_div)

        # Bitwise
        self.register(Mnemonic.AND, self._op_logic)
        self.register(Mnemonic.OR, self._op_logic)
        self.register(Mnemonic.XOR, self._op_logic)
        self.register(Mnemonic.TEST, self._op_logic)
        self.register(Mnemonic.NOT, self._op_not)

        # Shifts and rotates
        self.register(Mnemonic.SHL, self._op_shift)
        self.register(Mnemonic.SHR, self._op_shift)
        self.register(Mnemonic.SAR, self._op_shift)
        self.register(Mnemonic.ROL, self._op_shift)
        self.register(Mnemonic.ROR, self._op_shift)

        # Bit scan
        self.register(Mnemonic.BSF, self._op_bit_scan)
        self.register(Mnemonic.BSR, self._op_bit_scan)

        # Packed integer
        self.register(Mnemonic.PADDD, self._op_paddd)

    def register(self, key: Mnemonic, handler: Handler) -> None:
        """Register a handler.

        Args:
            key: Mnemonic the handler implements
            handler: Function taking (context, instruction)

        Raises:
            RuntimeError: If registry is frozen
            ValueError: If key already registered
        """
        if self._frozen:
            raise RuntimeError("Cannot register primitives: registry is frozen")
        if key in self._primitives:
            raise ValueError(f"Primitive already registered: {key}")
        self._primitives[key] = handler

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if registry is frozen."""
        return self._frozen

    def get_valid_keys(self) -> set:
        """Get set of all executable mnemonics."""
        return set(self._primitives.keys())

    def execute(self, state: CPUState, instruction: Instruction) -> None:
        """Execute one instruction against ``state``.

        All writes are staged and committed together; on ExecError the
        state is unchanged.

        Raises:
            ExecError: On unsupported mnemonic, invalid operands, division
                faults or out-of-bounds memory access
        """
        handler = self._primitives.get(instruction.mnemonic)
        if handler is None:
            raise ExecError(
                ExecErrorKind.UNSUPPORTED_MNEMONIC,
                f"No handler for {instruction.mnemonic.value}"
            )

        self._validate(instruction)

        context = ExecutionContext(state)
        handler(context, instruction)
        context.commit()
        log.debug("executed %s -> rip=%d", instruction, state.rip)

    def _validate(self, instruction: Instruction) -> None:
        """Checks shared by every handler: operand count, xmm use and immediate range."""
        if len(instruction.operands) not in OPERAND_COUNTS[instruction.mnemonic]:
            raise _invalid(instruction, f"wrong operand count {len(instruction.operands)}")
        uses_xmm = any(
            isinstance(op, Register) and op.width == XMM_WIDTH for op in instruction.operands
        )
        if uses_xmm and instruction.mnemonic not in PACKED_MNEMONICS:
            raise _invalid(instruction, "xmm registers are only valid for packed instructions")
        if sum(isinstance(op, Memory) for op in instruction.operands) > 1:
            raise _invalid(instruction, "more than one memory operand")
        for operand in instruction.operands:
            if isinstance(operand, Immediate) and not alu.fits(operand.value, operand.width):
                raise _width_mismatch(
                    instruction, f"immediate {operand.value} does not fit {operand.width} bits"
                )

    # =========================================================================
    # Data Movement
    # =========================================================================

    def _op_mov(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """MOV dst, src - copy; no flags."""
        _check_binary(instr)
        dest, src = instr.operands
        ctx.write(dest, ctx.read(src))

    def _op_movzx(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """MOVZX r, r/m8|r/m16 - zero-extending move."""
        dest, src = instr.operands
        _require_register(instr, dest)
        _require_rm(instr, src)
        if src.width not in (8, 16) or src.width >= dest.width:
            raise _width_mismatch(instr, f"cannot zero-extend {src.width} to {dest.width} bits")
        ctx.write(dest, ctx.read(src))

    def _op_movsx(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """MOVSX r, r/m8|r/m16 and MOVSXD r64, r/m32 - sign-extending move."""
        dest, src = instr.operands
        _require_rm(instr, src)
        if instr.mnemonic == Mnemonic.MOVSXD:
            _require_register(instr, dest, widths=(64,))
            if src.width != 32:
                raise _width_mismatch(instr, "movsxd source must be 32-bit")
        else:
            _require_register(instr, dest)
            if src.width not in (8, 16) or src.width >= dest.width:
                raise _width_mismatch(instr, f"cannot sign-extend {src.width} to {dest.width} bits")
        ctx.write(dest, alu.to_signed(ctx.read(src), src.width))

    def _op_lea(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """LEA r, m - store the effective address; memory is not accessed."""
        dest, src = instr.operands
        _require_register(instr, dest)
        if not isinstance(src, Memory):
            raise _invalid(instr, "lea source must be a memory operand")
        ctx.write(dest, ctx.effective_address(src))

    def _op_xchg(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """XCHG a, b - swap; no flags."""
        first, second = instr.operands
        _require_rm(instr, second)
        _check_binary(instr)
        a, b = ctx.read(first), ctx.read(second)
        ctx.write(first, b)
        ctx.write(second, a)

    def _op_push(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """PUSH r/m64|imm - rsp -= 8, then store 8 bytes at [rsp]."""
        (src,) = instr.operands
        if src.width != 64:
            raise _width_mismatch(instr, "push operand must be 64-bit")
        value = ctx.read(src)
        rsp = (ctx.read_register("rsp") - 8) & MASK64
        ctx.write_memory(rsp, 8, value)
        ctx.write_register("rsp", rsp)

    def _op_pop(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """POP r/m64 - load 8 bytes from [rsp], then rsp += 8."""
        (dest,) = instr.operands
        _require_rm(instr, dest)
        if dest.width != 64:
            raise _width_mismatch(instr, "pop operand must be 64-bit")
        rsp = ctx.read_register("rsp")
        value = ctx.read_memory(rsp, 8)
        ctx.write_register("rsp", (rsp + 8) & MASK64)
        ctx.write(dest, value)

    def _op_cmov(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """CMOVE/CMOVNE r, r/m - conditional move on ZF.

        The source is always read. A 32-bit destination is zero-extended
        even when the condition is false.
        """
        dest, src = instr.operands
        _require_register(instr, dest)
        _require_rm(instr, src)
        _require_same_width(instr, dest, src)
        value = ctx.read(src)
        taken = ctx.flag("ZF") if instr.mnemonic == Mnemonic.CMOVE else not ctx.flag("ZF")
        if taken:
            ctx.write(dest, value)
        elif dest.width == 32:
            ctx.write(dest, ctx.read(dest))

    def _op_sign_extend_accumulator(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """CQO: rdx:rax <- sign-extend rax. CDQ: edx:eax <- sign-extend eax."""
        low, high, width = ("rax", "rdx", 64) if instr.mnemonic == Mnemonic.CQO else ("eax", "edx", 32)
        negative = bool(ctx.read_register(low) & alu.sign_bit(width))
        ctx.write_register(high, alu.mask(width) if negative else 0)

    def _op_nop(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """NOP - only rip advances."""

    # =========================================================================
    # Arithmetic
    # =========================================================================

    def _op_add(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """ADD/ADC dst, src - all six flags."""
        _check_binary(instr)
        dest, src = instr.operands
        carry = int(ctx.flag("CF")) if instr.mnemonic == Mnemonic.ADC else 0
        result, flags = alu.add(ctx.read(dest), ctx.read(src), dest.width, carry)
        ctx.write(dest, result)
        ctx.set_flags(flags)

    def _op_sub(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """SUB/SBB/CMP dst, src - all six flags; CMP discards the result."""
        _check_binary(instr)
        dest, src = instr.operands
        borrow = int(ctx.flag("CF")) if instr.mnemonic == Mnemonic.SBB else 0
        result, flags = alu.sub(ctx.read(dest), ctx.read(src), dest.width, borrow)
        if instr.mnemonic != Mnemonic.CMP:
            ctx.write(dest, result)
        ctx.set_flags(flags)

    def _op_inc_dec(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """INC/DEC r/m - CF unchanged."""
        (dest,) = instr.operands
        _require_rm(instr, dest)
        op = alu.inc if instr.mnemonic == Mnemonic.INC else alu.dec
        result, flags = op(ctx.read(dest), dest.width)
        ctx.write(dest, result)
        ctx.set_flags(flags)

    def _op_neg(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """NEG r/m - two's complement negate."""
        (dest,) = instr.operands
        _require_rm(instr, dest)
        result, flags = alu.neg(ctx.read(dest), dest.width)
        ctx.write(dest, result)
        ctx.set_flags(flags)

    def _op_mul(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """MUL r/m - unsigned accumulator multiply into the high:low pair."""
        (src,) = instr.operands
        _require_rm(instr, src)
        self._widening_multiply(ctx, src, alu.mul)

    def _op_imul(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """IMUL r/m | IMUL r, r/m | IMUL r, r/m, imm - signed multiply."""
        operands = instr.operands
        if len(operands) == 1:
            _require_rm(instr, operands[0])
            self._widening_multiply(ctx, operands[0], alu.imul)
            return

        dest = operands[0]
        _require_register(instr, dest)
        if len(operands) == 2:
            src = operands[1]
            _require_rm(instr, src)
            _require_same_width(instr, dest, src)
            a, b = ctx.read(dest), ctx.read(src)
        else:
            src, factor = operands[1], operands[2]
            _require_rm(instr, src)
            if not isinstance(factor, Immediate):
                raise _invalid(instr, "third operand must be an immediate")
            _require_same_width(instr, dest, src)
            _require_same_width(instr, dest, factor)
            a, b = ctx.read(src), ctx.read(factor)

        low, _, flags = alu.imul(a, b, dest.width)
        ctx.write(dest, low)
        ctx.set_flags(flags)

    def _widening_multiply(self, ctx: ExecutionContext, src: Operand, op) -> None:
        width = src.width
        low_reg, high_reg = _ACCUMULATORS[width]
        low, high, flags = op(ctx.read_register(low_reg), ctx.read(src), width)
        if width == 8:
            ctx.write_register("ax", (high << 8) | low)
        else:
            ctx.write_register(low_reg, low)
            ctx.write_register(high_reg, high)
        ctx.set_flags(flags)

    def _op_div(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """DIV/IDIV r/m - divide high:low by the operand; flags unchanged.

        Raises:
            ExecError: DIVIDE_BY_ZERO, or DIVIDE_OVERFLOW when the quotient
                does not fit the accumulator
        """
        (src,) = instr.operands
        _require_rm(instr, src)
        width = src.width
        divisor = ctx.read(src)
        if divisor == 0:
            raise ExecError(ExecErrorKind.DIVIDE_BY_ZERO, f"{instr}: division by zero")

        low_reg, high_reg = _ACCUMULATORS[width]
        if width == 8:
            dividend = ctx.read_register("ax")
        else:
            dividend = (ctx.read_register(high_reg) << width) | ctx.read_register(low_reg)

        op = alu.div if instr.mnemonic == Mnemonic.DIV else alu.idiv
        quotient, remainder = op(dividend, divisor, width)
        if quotient is None:
            raise ExecError(ExecErrorKind.DIVIDE_OVERFLOW, f"{instr}: quotient too large")

        if width == 8:
            ctx.write_register("ax", (remainder << 8) | quotient)
        else:
            ctx.write_register(low_reg, quotient)
            ctx.write_register(high_reg, remainder)

    # =========================================================================
    # Bitwise
    # =========================================================================

    _LOGIC_OPS = {
        Mnemonic.AND: lambda a, b: a & b,
        Mnemonic.TEST: lambda a, b: a & b,
        Mnemonic.OR: lambda a, b: a | b,
        Mnemonic.XOR: lambda a, b: a ^ b,
    }

    def _op_logic(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """AND/OR/XOR/TEST - CF=OF=0, ZF/SF/PF from result; TEST discards it."""
        _check_binary(instr)
        dest, src = instr.operands
        result = self._LOGIC_OPS[instr.mnemonic](ctx.read(dest), ctx.read(src))
        if instr.mnemonic != Mnemonic.TEST:
            ctx.write(dest, result)
        ctx.set_flags(alu.logic(result, dest.width))

    def _op_not(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """NOT r/m - one's complement; no flags."""
        (dest,) = instr.operands
        _require_rm(instr, dest)
        ctx.write(dest, ~ctx.read(dest) & alu.mask(dest.width))

    # =========================================================================
    # Shifts and rotates
    # =========================================================================

    def _op_shift(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """SHL/SHR/SAR/ROL/ROR r/m, imm8|cl - count masked to the operand width."""
        dest, count = instr.operands
        _require_rm(instr, dest)
        if isinstance(count, Register):
            if count.name != "cl":
                raise _invalid(instr, "shift count register must be cl")
        elif not isinstance(count, Immediate):
            raise _invalid(instr, "shift count must be an immediate or cl")

        name = instr.mnemonic.value
        op = alu.rotate if instr.mnemonic in (Mnemonic.ROL, Mnemonic.ROR) else alu.shift
        result, flags = op(name, ctx.read(dest), ctx.read(count), dest.width)
        if flags:
            ctx.write(dest, result)
            ctx.set_flags(flags)
        elif isinstance(dest, Register) and dest.width == 32:
            # a zero masked count still writes, so the upper half is cleared
            ctx.write(dest, ctx.read(dest))

    # =========================================================================
    # Bit scan
    # =========================================================================

    def _op_bit_scan(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """BSF/BSR r, r/m - ZF=1 and destination unchanged when source is 0."""
        dest, src = instr.operands
        _require_register(instr, dest)
        _require_rm(instr, src)
        _require_same_width(instr, dest, src)
        value = ctx.read(src)
        if value == 0:
            ctx.set_flags({"ZF": True})
            return
        scan = alu.bit_scan_forward if instr.mnemonic == Mnemonic.BSF else alu.bit_scan_reverse
        ctx.write(dest, scan(value))
        ctx.set_flags({"ZF": False})


    # =========================================================================
    # Packed integer
    # =========================================================================

    def _op_paddd(self, ctx: ExecutionContext, instr: Instruction) -> None:
        """PADDD xmm, xmm - four independent wrapping 32-bit adds; no flags."""
        dest, src = instr.operands
        for operand in (dest, src):
            if not isinstance(operand, Register) or operand.width != XMM_WIDTH:
                raise _invalid(instr, "paddd operands must be xmm registers")
        lanes = zip(xmm_lanes(ctx.read(dest)), xmm_lanes(ctx.read(src)))
        result = 0
        for lane, (a, b) in enumerate(lanes):
            result |= ((a + b) & 0xFFFFFFFF) << (32 * lane)
        ctx.write(dest, result)


# Singleton registry instance
_registry: Optional[CPURegistry] = None


def get_registry() -> CPURegistry:
    """Get the singleton CPU registry instance.

    Returns:
        The frozen CPURegistry instance
    """
    global _registry
    if _registry is None:
        _registry = CPURegistry()
    return _registry


def execute(instruction: Instruction, state: CPUState) -> None:
    """Execute one instruction against ``state`` (atomic on ExecError)."""
    get_registry().execute(state, instruction)
