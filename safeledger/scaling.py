"""
scaling.py - Fixed-point helpers for rebase-aware accounting

A pool keeps a single scaling factor instead of rescaling every holder when
its token balance drifts. Each holder stores the factor its amount was last
normalized against; the amount is brought up to date lazily:

    pool:    S' = S * A // T,  T' = A
    holder:  a' = a * S_current // s

All arithmetic is on non-negative ints. Products are exact (Python ints are
unbounded) but results must fit in an unsigned 256-bit word, mirroring the
fixed-width integers the accounting was designed for. Division truncates.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from .core import BASE_UNIT, MAX_UINT256, ArithmeticOverflow


@dataclass(frozen=True, slots=True)
class Rebase:
    """
    Result of reconciling a recorded total against an observed one.

    Attributes:
        total: Total to record from now on.
        scale: Scale to record from now on.
        changed: True if either value differs from what was recorded.
        orphaned: True if a balance appeared with nothing recorded against it.
            The caller must sweep it rather than credit anyone.
    """
    total: int
    scale: int
    changed: bool
    orphaned: bool = False


def check_uint(value: int, label: str = "value") -> int:
    """Validate that value fits in an unsigned 256-bit word."""
    if value < 0:
        raise ValueError(f"{label} must be non-negative, got {value}")
    if value > MAX_UINT256:
        raise ArithmeticOverflow(f"{label} overflows uint256")
    return value


def mul_div(a: int, b: int, d: int) -> int:
    """
    Compute a * b // d with a full-width intermediate.

    Raises:
        ZeroDivisionError: If d is zero.
        ArithmeticOverflow: If the result does not fit in 256 bits.
    """
    if d == 0:
        raise ZeroDivisionError("mul_div by zero")
    if a < 0 or b < 0 or d < 0:
        raise ValueError("mul_div operands must be non-negative")
    return check_uint(a * b // d, "mul_div result")


def effective_scale(scale: int) -> int:
    """An unset (zero) scale means no drift has been recorded yet."""
    return scale or BASE_UNIT


def rescale(recorded_total: int, recorded_scale: int, actual_total: int) -> Rebase:
    """
    Reconcile a recorded total and its scale against an observed total.

    Args:
        recorded_total: Total the component believes it holds.
        recorded_scale: Scale in effect for that total (0 means unset).
        actual_total: Total actually observed.

    Returns:
        Rebase describing the new (total, scale) pair.

    Example:
        >>> rescale(1000, BASE_UNIT, 1100).scale == BASE_UNIT * 11 // 10
        True
    """
    if recorded_total == actual_total:
        return Rebase(recorded_total, recorded_scale, changed=False)
    if recorded_total == 0:
        return Rebase(0, recorded_scale, changed=False, orphaned=True)
    scale = mul_div(effective_scale(recorded_scale), actual_total, recorded_total)
    return Rebase(actual_total, scale, changed=True)


def normalize(
    amount: int,
    current_scale: int,
    stored_scale: int,
    ceiling: Optional[int] = None,
) -> int:
    """
    Bring an amount recorded at stored_scale up to current_scale.

    With a ceiling, the result never exceeds it, and a rescaled result exactly
    one unit below it is snapped to the ceiling to absorb truncation.

    Args:
        amount: Recorded amount.
        current_scale: Scale in effect now.
        stored_scale: Scale the amount was recorded against (0 means unset).
        ceiling: Upper bound for the normalized amount, usually the pool total.

    Returns:
        The normalized amount.
    """
    if amount == 0:
        return 0
    stored = effective_scale(stored_scale)
    current = effective_scale(current_scale)
    if stored == current:
        return amount if ceiling is None else min(amount, ceiling)
    result = mul_div(amount, current, stored)
    if ceiling is not None:
        if result > ceiling:
            result = ceiling
        elif ceiling - result == 1:
            result = ceiling
    return result


def proportional_share(amount: int, part: int, whole: int) -> int:
    """Share of amount attributable to part out of whole (truncated)."""
    if whole == 0:
        return 0
    return mul_div(amount, part, whole)
