"""Ratio helpers shared by the reconciliation gate."""
from __future__ import annotations

from typing import Optional

RATIO_PRECISION = 6


def ratio_or_zero(numerator: float | int, denominator: float | int) -> float:
    if not denominator:
        return 0.0
    return round(float(numerator) / float(denominator), RATIO_PRECISION)


def percent_or_null(numerator: float | int, denominator: float | int) -> Optional[float]:
    """Percentage rounded to 2 places, None for an empty denominator."""
    if not denominator:
        return None
    return round(float(numerator) / float(denominator) * 100, 2)


__all__ = ["ratio_or_zero", "percent_or_null", "RATIO_PRECISION"]
