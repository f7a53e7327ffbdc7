"""Width-aware integer arithmetic and flag computation.

Every function is pure: it takes unsigned operand values (already masked to
``width`` bits) and returns the result together with a dict of the flags the
operation class defines. Flags missing from the dict are left unchanged by
the caller.

Fixed values for architecturally undefined flags:
    - AF is cleared by logic, multiply and shift operations
    - SF/ZF/PF after mul/imul are taken from the low half of the product
"""

from typing import Dict, Optional, Tuple


Flags = Dict[str, bool]


def mask(width: int) -> int:
    return (1 << width) - 1


def sign_bit(width: int) -> int:
    return 1 << (width - 1)


def to_signed(value: int, width: int) -> int:
    """Interpret the low ``width`` bits of value as two's complement."""
    value &= mask(width)
    return value - (1 << width) if value & sign_bit(width) else value


def fits(value: int, width: int) -> bool:
    """Value is representable in ``width`` bits, signed or unsigned."""
    return -(1 << (width - 1)) <= value <= mask(width)


def parity(value: int) -> bool:
    """PF: set when the low byte has an even number of 1 bits."""
    return bin(value & 0xFF).count("1") % 2 == 0


def result_flags(result: int, width: int) -> Flags:
    """ZF, SF and PF derived from a result."""
    return {
        "ZF": result == 0,
        "SF": bool(result & sign_bit(width)),
        "PF": parity(result),
    }


# =============================================================================
# Add / subtract
# =============================================================================

def add(a: int, b: int, width: int, carry_in: int = 0) -> Tuple[int, Flags]:
    """a + b (+ carry). Defines all six flags."""
    full = a + b + carry_in
    result = full & mask(width)
    flags = result_flags(result, width)
    flags["CF"] = full > mask(width)
    flags["OF"] = bool(~(a ^ b) & (a ^ result) & sign_bit(width))
    flags["AF"] = bool((a ^ b ^ result) & 0x10)
    return result, flags


def sub(a: int, b: int, width: int, borrow_in: int = 0) -> Tuple[int, Flags]:
    """a - b (- borrow). Defines all six flags; CF is the borrow."""
    full = a - b - borrow_in
    result = full & mask(width)
    flags = result_flags(result, width)
    flags["CF"] = full < 0
    flags["OF"] = bool((a ^ b) & (a ^ result) & sign_bit(width))
    flags["AF"] = bool((a ^ b ^ result) & 0x10)
    return result, flags


def inc(a: int, width: int) -> Tuple[int, Flags]:
    """a + 1. CF is not affected."""
    result, flags = add(a, 1, width)
    del flags["CF"]
    return result, flags


def dec(a: int, width: int) -> Tuple[int, Flags]:
    """a - 1. CF is not affected."""
    result, flags = sub(a, 1, width)
    del flags["CF"]
    return result, flags


def neg(a: int, width: int) -> Tuple[int, Flags]:
    """0 - a. CF is set unless the operand is zero."""
    return sub(0, a, width)


# =============================================================================
# Logic
# =============================================================================

def logic(result: int, width: int) -> Flags:
    """Flags after and/or/xor/test: CF=OF=0, AF fixed to 0."""
    flags = result_flags(result, width)
    flags.update(CF=False, OF=False, AF=False)
    return flags


# =============================================================================
# Multiply / divide
# =============================================================================

def mul(a: int, b: int, width: int) -> Tuple[int, int, Flags]:
    """Unsigned a * b.

    Returns:
        (low half, high half, flags); CF=OF=1 iff the high half is non-zero
    """
    full = a * b
    low = full & mask(width)
    high = full >> width
    flags = result_flags(low, width)
    flags.update(CF=high != 0, OF=high != 0, AF=False)
    return low, high, flags


def imul(a: int, b: int, width: int) -> Tuple[int, int, Flags]:
    """Signed a * b.

    Returns:
        (low half, high half, flags); CF=OF=1 iff the product does not fit
        in ``width`` bits signed
    """
    full = to_signed(a, width) * to_signed(b, width)
    low = full & mask(width)
    high = (full >> width) & mask(width)
    overflow = full != to_signed(low, width)
    flags = result_flags(low, width)
    flags.update(CF=overflow, OF=overflow, AF=False)
    return low, high, flags


def div(dividend: int, divisor: int, width: int) -> Tuple[Optional[int], int]:
    """Unsigned division of a 2*width dividend.

    Returns:
        (quotient, remainder), or None for the quotient when it does not
        fit in ``width`` bits. The caller checks for a zero divisor.
    """
    quotient, remainder = divmod(dividend, divisor)
    if quotient > mask(width):
        return None, remainder
    return quotient, remainder


def idiv(dividend: int, divisor: int, width: int) -> Tuple[Optional[int], int]:
    """Signed division, truncating toward zero like the hardware.

    Returns:
        (quotient, remainder) as unsigned ``width``-bit values, with None for
        the quotient when it overflows the signed range.
    """
    n = to_signed(dividend, 2 * width)
    d = to_signed(divisor, width)
    quotient = abs(n) // abs(d)
    if (n < 0) != (d < 0):
        quotient = -quotient
    remainder = n - quotient * d
    if not -(1 << (width - 1)) <= quotient < (1 << (width - 1)):
        return None, remainder & mask(width)
    return quotient & mask(width), remainder & mask(width)


# =============================================================================
# Shifts / rotates
# =============================================================================

def count_mask(width: int) -> int:
    """Shift counts use 6 bits for 64-bit operands and 5 bits otherwise."""
    return 0x3F if width == 64 else 0x1F


def shift(op: str, value: int, count: int, width: int) -> Tuple[int, Flags]:
    """shl / shr / sar. A masked count of zero returns the value and no flags."""
    count &= count_mask(width)
    if count == 0:
        return value, {}

    top = sign_bit(width)
    if op == "shl":
        result = (value << count) & mask(width)
        carry = bool((value >> (width - count)) & 1) if count <= width else False
        overflow = bool(result & top) != carry
    elif op == "shr":
        result = value >> count
        carry = bool((value >> (count - 1)) & 1)
        overflow = bool(value & top)
    elif op == "sar":
        signed = to_signed(value, width)
        result = (signed >> count) & mask(width)
        carry = bool((signed >> (count - 1)) & 1)
        overflow = False
    else:
        raise ValueError(f"Unknown shift: {op}")

    flags = result_flags(result, width)
    flags.update(CF=carry, OF=overflow, AF=False)
    return result, flags


def rotate(op: str, value: int, count: int, width: int) -> Tuple[int, Flags]:
    """rol / ror. Only CF and OF are affected."""
    count &= count_mask(width)
    if count == 0:
        return value, {}

    n = count % width
    top = sign_bit(width)
    if op == "rol":
        result = ((value << n) | (value >> (width - n))) & mask(width) if n else value
        carry = bool(result & 1)
        overflow = bool(result & top) != carry
    elif op == "ror":
        result = ((value >> n) | (value << (width - n))) & mask(width) if n else value
        carry = bool(result & top)
        overflow = carry != bool(result & (top >> 1))
    else:
        raise ValueError(f"Unknown rotate: {op}")

    return result, {"CF": carry, "OF": overflow}


# =============================================================================
# Bit scan
# =============================================================================

def bit_scan_forward(value: int) -> int:
    """Index of the lowest set bit (value must be non-zero)."""
    return (value & -value).bit_length() - 1


def bit_scan_reverse(value: int) -> int:
    """Index of the highest set bit (value must be non-zero)."""
    return value.bit_length() - 1
