from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

logger = logging.getLogger(__name__)

DEFAULT_EPSILON = 0.01


@dataclass(frozen=True)
class DecayProfile:
    active_window_hours: float
    epsilon: float = DEFAULT_EPSILON


INSULIN_PROFILE = DecayProfile(active_window_hours=4.0)
CARB_PROFILE = DecayProfile(active_window_hours=5.0)


def _clamp(value: float, min_value: float = 0.0, max_value: float | None = None) -> float:
    if max_value is not None:
        value = min(value, max_value)
    return max(value, min_value)


def _validate(active_window_hours: float, epsilon: float) -> None:
    if active_window_hours <= 0:
        raise ValueError(f"active_window_hours must be positive, got {active_window_hours}")
    if not 0 < epsilon < 1:
        raise ValueError(f"epsilon must be in (0, 1), got {epsilon}")


def hours_elapsed(event_time: datetime, now: datetime) -> float:
    # An event after `now` has not started decaying yet.
    return _clamp((now - event_time).total_seconds() / 3600.0)


def decay_constant(active_window_hours: float, epsilon: float = DEFAULT_EPSILON) -> float:
    """k such that exp(-k * window) == epsilon."""
    _validate(active_window_hours, epsilon)
    return math.log(1.0 / epsilon) / active_window_hours


def decayed_amount(
    initial_amount: float,
    event_time: datetime,
    now: datetime,
    active_window_hours: float,
    epsilon: float = DEFAULT_EPSILON,
) -> float:
    k = decay_constant(active_window_hours, epsilon)
    elapsed = hours_elapsed(event_time, now)
    return _clamp(initial_amount * math.exp(-k * elapsed))


def is_active(
    initial_amount: float,
    event_time: datetime,
    now: datetime,
    active_window_hours: float,
    epsilon: float = DEFAULT_EPSILON,
) -> bool:
    elapsed = hours_elapsed(event_time, now)
    if elapsed > active_window_hours:
        return False
    return decayed_amount(initial_amount, event_time, now, active_window_hours, epsilon) > epsilon


def total_active(events: Iterable, now: datetime) -> float:
    """
    Sum of decayed amounts for events still active at `now`.
    Events are anything exposing `decayed_amount(at)` and `is_active(at)`.
    """
    total = 0.0
    for event in events:
        if event.is_active(now):
            total += event.decayed_amount(now)
    return total


__all__ = [
    "DEFAULT_EPSILON",
    "DecayProfile",
    "INSULIN_PROFILE",
    "CARB_PROFILE",
    "hours_elapsed",
    "decay_constant",
    "decayed_amount",
    "is_active",
    "total_active",
]
