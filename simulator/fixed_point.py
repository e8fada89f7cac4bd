"""
fixed_point.py — Checked fixed-point arithmetic for ledger amounts.

The ledger program stores prices and position sizes as integers at a 1e6
scale (one million units per whole unit) and position sizes as signed
128-bit values. Python integers never overflow, so every multiply and
divide here is range-checked against the i128 bounds to reproduce the
program's limits exactly.

Usage:
    price_e6 = price_to_e6(64_123.456789)        # 64123456789
    size = size_from_notional(1_000.0, 5.0, price_e6)
    pnl = realized_pnl_e6(size, entry_e6, exit_e6)
"""

from __future__ import annotations

import math


# ─── Constants ────────────────────────────────────────────────────────────────

PRICE_SCALE = 1_000_000          # 1e6 fixed-point scale for prices and sizes
NOTIONAL_SCALE = PRICE_SCALE * PRICE_SCALE

I128_MIN = -(1 << 127)
I128_MAX = (1 << 127) - 1
U64_MAX = (1 << 64) - 1


# ─── Exceptions ───────────────────────────────────────────────────────────────


class FixedPointOverflow(ArithmeticError):
    """Raised when a result does not fit in a signed 128-bit integer."""


# ─── Checked i128 Operations ──────────────────────────────────────────────────


def check_i128(value: int) -> int:
    """Return value unchanged if it fits in i128, else raise FixedPointOverflow."""
    if value < I128_MIN or value > I128_MAX:
        raise FixedPointOverflow(f"value {value} outside i128 range")
    return value


def mul_i128(a: int, b: int) -> int:
    check_i128(a)
    check_i128(b)
    return check_i128(a * b)


def div_round_i128(numerator: int, denominator: int) -> int:
    """
    Divide two i128 values, rounding half away from zero.

    Raises ZeroDivisionError for a zero denominator and FixedPointOverflow
    when either operand or the quotient leaves the i128 range.
    """
    check_i128(numerator)
    check_i128(denominator)
    if denominator == 0:
        raise ZeroDivisionError("fixed-point division by zero")
    negative = (numerator < 0) != (denominator < 0)
    n, d = abs(numerator), abs(denominator)
    q, r = divmod(n, d)
    if r * 2 >= d:
        q += 1
    return check_i128(-q if negative else q)


# ─── Conversions ──────────────────────────────────────────────────────────────


def price_to_e6(price: float) -> int:
    """
    Convert a float price to its 1e6 fixed-point integer.

    Rounds to the nearest integer with halves rounded up, matching how the
    feed has always published prices (not Python's banker's rounding).
    """
    if not math.isfinite(price) or price <= 0:
        raise ValueError(f"price must be positive and finite, got {price}")
    value = math.floor(price * PRICE_SCALE + 0.5)
    if value > U64_MAX:
        raise FixedPointOverflow(f"price {price} exceeds u64 at 1e6 scale")
    return value


def e6_to_float(value: int) -> float:
    return value / PRICE_SCALE


def size_from_notional(usd_notional: float, leverage: float, price_e6: int) -> int:
    """
    Position size in base-asset units at 1e6 scale for a USD order.

        size = usd_notional * leverage * 1e12 / price_e6

    The leveraged notional is first fixed at 1e6 scale, then divided by the
    fixed-point price with half-up rounding. Always returns a non-negative
    size; the caller applies the direction.
    """
    if price_e6 <= 0:
        raise ValueError(f"price_e6 must be positive, got {price_e6}")
    if usd_notional <= 0 or leverage <= 0:
        raise ValueError("usd_notional and leverage must be positive")
    notional_e6 = math.floor(usd_notional * leverage * PRICE_SCALE + 0.5)
    return div_round_i128(mul_i128(notional_e6, PRICE_SCALE), price_e6)


def notional_e6(size: int, price_e6: int) -> int:
    """Absolute USD notional (1e6 scale) of a position at the given price."""
    return div_round_i128(mul_i128(abs(size), price_e6), PRICE_SCALE)


def realized_pnl_e6(size: int, entry_price_e6: int, exit_price_e6: int) -> int:
    """
    Realised PnL (USD, 1e6 scale) of closing `size` opened at entry and
    closed at exit. Positive size is long, negative is short.
    """
    delta = check_i128(exit_price_e6 - entry_price_e6)
    return div_round_i128(mul_i128(size, delta), PRICE_SCALE)


# ─── Byte Encoding ────────────────────────────────────────────────────────────


def i128_to_le_bytes(value: int) -> bytes:
    """Two's-complement little-endian encoding of an i128."""
    check_i128(value)
    return value.to_bytes(16, "little", signed=True)


def i128_from_le_bytes(data: bytes) -> int:
    if len(data) != 16:
        raise ValueError(f"i128 needs 16 bytes, got {len(data)}")
    return int.from_bytes(data, "little", signed=True)
