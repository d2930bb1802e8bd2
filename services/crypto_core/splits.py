# crypto_core/splits.py
from __future__ import annotations

BPS_DENOMINATOR = 10_000


def bps_of(amount: int, bps: int) -> int:
    """Integer share of `amount` for `bps` basis points, truncating."""
    if amount < 0 or bps < 0:
        raise ValueError("amount and bps must be >= 0")
    return amount * bps // BPS_DENOMINATOR


def remainder_after(total: int, *parts: int) -> int:
    """
    `total - sum(parts)`; refuses to go negative instead of wrapping.
    Raises ArithmeticError when the parts exceed the total.
    """
    taken = sum(parts)
    if any(p < 0 for p in parts) or taken > total:
        raise ArithmeticError(f"split parts {parts} exceed total {total}")
    return total - taken
