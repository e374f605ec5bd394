"""
Conversion between mmol/L (canonical) and mg/dL (display).

Rounding to whole mg/dL is lossy: converting a rounded mg/dL value back to
mmol/L and forward again may land on a neighbouring integer. Always keep the
mmol/L value and derive mg/dL from it, never the other way round.
"""

import math
from typing import Optional

MGDL_PER_MMOL = 18.0


def to_secondary_unit(primary: float) -> float:
    return primary * MGDL_PER_MMOL


def to_secondary_display(primary: float) -> int:
    # Halves round away from zero, not to even.
    scaled = to_secondary_unit(primary)
    return int(math.copysign(math.floor(abs(scaled) + 0.5), scaled))


def to_primary_unit(secondary: float) -> float:
    return secondary / MGDL_PER_MMOL


def format_primary(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.2f}"


def format_secondary(value: Optional[float]) -> str:
    return "" if value is None else str(to_secondary_display(value))


__all__ = [
    "MGDL_PER_MMOL",
    "to_secondary_unit",
    "to_secondary_display",
    "to_primary_unit",
    "format_primary",
    "format_secondary",
]
