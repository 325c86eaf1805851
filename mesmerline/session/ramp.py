"""Linear ramp interpolation for ramp-capable feature settings.

Settings are integer sliders, so interpolated values are rounded half away
from zero. Pure functions, no state.
"""

from __future__ import annotations

import math


def round_half_away_from_zero(value: float) -> int:
    """Round to the nearest integer; .5 moves away from zero (2.5 -> 3, -2.5 -> -3)."""
    if value >= 0:
        return int(math.floor(value + 0.5))
    return -int(math.floor(-value + 0.5))


def ramp_ratio(start_minute: float, stop_minute: float, current_minute: float) -> float:
    """Fraction of the interval elapsed, clamped to [0, 1].

    A zero-length (or inverted) interval counts as already finished once
    ``current_minute`` reaches ``start_minute``.
    """
    if stop_minute <= start_minute:
        return 1.0 if current_minute >= start_minute else 0.0
    ratio = (current_minute - start_minute) / (stop_minute - start_minute)
    return min(1.0, max(0.0, ratio))


def interpolate_ramp(
    start_value: int,
    end_value: int,
    start_minute: float,
    stop_minute: float,
    current_minute: float,
) -> int:
    """Value of a ramp at ``current_minute``.

    Example:
        interpolate_ramp(10, 90, 2, 10, 6)  # 50
    """
    ratio = ramp_ratio(start_minute, stop_minute, current_minute)
    if ratio >= 1.0:
        return int(end_value)
    value = start_value + (end_value - start_value) * ratio
    result = round_half_away_from_zero(value)
    # Float error must never push the result past either endpoint
    lo, hi = min(start_value, end_value), max(start_value, end_value)
    return max(lo, min(hi, result))
