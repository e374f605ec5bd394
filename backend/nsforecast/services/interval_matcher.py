"""
Nearest-in-time matching of forecasts to observations.

A forecast made at T targets T + horizon. Only observations strictly after T
are candidates (the value must not have been known when the forecast was
made). Among those, the one closest to the target wins, provided it lies
within the tolerance. Ties go to the earliest candidate in timestamp order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Sequence, TypeVar

from nsforecast.models.domain import Observation
from nsforecast.utils.timezone import ensure_utc, minutes_between

T = TypeVar("T")

DEFAULT_HORIZON_MINUTES = 20.0
DEFAULT_TOLERANCE_MINUTES = 5.0
ACCEPTANCE_MIN_MINUTES = 15.0
ACCEPTANCE_MAX_MINUTES = 25.0


@dataclass(frozen=True)
class Match:
    observation: Observation
    value: float  # mmol/L
    elapsed_minutes: float  # observation time minus forecast time


def elapsed_minutes(forecast_time: datetime, observed_at: datetime) -> float:
    return minutes_between(forecast_time, observed_at)


def within_acceptance_window(
    elapsed: float,
    minimum: float = ACCEPTANCE_MIN_MINUTES,
    maximum: float = ACCEPTANCE_MAX_MINUTES,
) -> bool:
    return minimum <= elapsed <= maximum


def find_nearest(
    target: datetime,
    items: Iterable[T],
    key: Callable[[T], datetime],
    tolerance_seconds: float,
) -> Optional[T]:
    """
    Symmetric nearest lookup: the item whose key is closest to `target`,
    before or after, within `tolerance_seconds`. Items are scanned in key
    order so the earliest of equally distant items wins.
    """
    target = ensure_utc(target)
    best: Optional[T] = None
    best_diff = float("inf")
    for item in sorted(items, key=key):
        diff = abs((ensure_utc(key(item)) - target).total_seconds())
        if diff < best_diff:
            best, best_diff = item, diff
    if best is None or best_diff > tolerance_seconds:
        return None
    return best


def find_match(
    forecast_time: datetime,
    candidates: Sequence[Observation],
    horizon_minutes: float = DEFAULT_HORIZON_MINUTES,
    tolerance_minutes: float = DEFAULT_TOLERANCE_MINUTES,
    presorted: bool = False,
) -> Optional[Match]:
    """
    Best observation for a forecast made at `forecast_time`, or None.

    Pass `presorted=True` when `candidates` are already ascending by
    timestamp to skip the sort.
    """
    forecast_time = ensure_utc(forecast_time)
    target = forecast_time + timedelta(minutes=horizon_minutes)
    ordered = candidates if presorted else sorted(candidates, key=lambda o: o.timestamp)

    best: Optional[Observation] = None
    best_diff = float("inf")
    for observation in ordered:
        if observation.timestamp <= forecast_time:
            continue
        diff = abs((observation.timestamp - target).total_seconds())
        if diff < best_diff:
            best, best_diff = observation, diff

    if best is None or best_diff > tolerance_minutes * 60:
        return None
    return Match(
        observation=best,
        value=best.value,
        elapsed_minutes=elapsed_minutes(forecast_time, best.timestamp),
    )


__all__ = [
    "Match",
    "DEFAULT_HORIZON_MINUTES",
    "DEFAULT_TOLERANCE_MINUTES",
    "ACCEPTANCE_MIN_MINUTES",
    "ACCEPTANCE_MAX_MINUTES",
    "elapsed_minutes",
    "within_acceptance_window",
    "find_nearest",
    "find_match",
]
