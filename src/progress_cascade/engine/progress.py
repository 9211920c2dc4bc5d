"""Progress calculation.

The single place where a parent's completion percentage is derived from its
children's counts.  Pure and deterministic: no I/O, no clock.
"""
from __future__ import annotations

from progress_cascade.core.exceptions import ValidationError


def round_half_up(numerator: int, denominator: int) -> int:
    """Return ``round(numerator / denominator)`` with halves rounded up.

    Integer arithmetic only, so ``1/8 * 100 = 12.5`` becomes 13 rather than
    the 12 that Python's banker's rounding would give.
    """
    return (2 * numerator + denominator) // (2 * denominator)


def compute_progress(
    total_children: int,
    completed_children: int,
    stored_progress: int = 0,
    retain_when_empty: bool = True,
) -> int:
    """Return a parent's progress as an integer percentage in ``[0, 100]``.

    Args:
        total_children: Number of children currently under the parent
        completed_children: How many of them are ``completed``
        stored_progress: The parent's current stored value
        retain_when_empty: With no children, return *stored_progress*
            unchanged (True) or 0 (False)

    Raises:
        ValidationError: If the counts are negative or inconsistent

    Examples:
        >>> compute_progress(3, 1)
        33
        >>> compute_progress(3, 2)
        67
        >>> compute_progress(0, 0, stored_progress=40)
        40
    """
    if total_children < 0:
        raise ValidationError("total_children", f"must not be negative, got {total_children}")
    if not 0 <= completed_children <= total_children:
        raise ValidationError(
            "completed_children",
            f"must be between 0 and {total_children}, got {completed_children}",
        )
    if total_children == 0:
        return stored_progress if retain_when_empty else 0
    return round_half_up(completed_children * 100, total_children)


__all__ = ["compute_progress", "round_half_up"]
