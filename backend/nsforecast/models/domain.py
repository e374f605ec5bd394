"""
Domain types for forecast reconciliation.

Observations are ground-truth glucose readings. Forecasts are single-model
predictions made at a timestamp for a fixed horizon ahead. All concentrations
are stored in mmol/L; mg/dL is derived for display only.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

from nsforecast.services import decay
from nsforecast.utils.timezone import ensure_utc, minutes_between, parse_timestamp

EventKind = Literal["insulin", "carbs"]

DEFAULT_HORIZON_MINUTES = 20


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return ensure_utc(dt).isoformat() if dt else None


def _parse_optional(value: Any) -> Optional[datetime]:
    return parse_timestamp(value) if value else None


@dataclass(frozen=True)
class Observation:
    id: str
    timestamp: datetime
    value: float  # mmol/L
    source: str = ""

    def __post_init__(self):
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))
        object.__setattr__(self, "value", float(self.value))


@dataclass
class EventTimings:
    last_carb_timestamp: Optional[datetime] = None
    minutes_since_carb: Optional[float] = None
    last_insulin_timestamp: Optional[datetime] = None
    minutes_since_insulin: Optional[float] = None

    def set_carb(self, last_carb: Optional[datetime], prediction_time: datetime) -> None:
        self.last_carb_timestamp = last_carb
        self.minutes_since_carb = minutes_between(last_carb, prediction_time) if last_carb else None

    def set_insulin(self, last_insulin: Optional[datetime], prediction_time: datetime) -> None:
        self.last_insulin_timestamp = last_insulin
        self.minutes_since_insulin = minutes_between(last_insulin, prediction_time) if last_insulin else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_carb_timestamp": _iso(self.last_carb_timestamp),
            "minutes_since_carb": self.minutes_since_carb,
            "last_insulin_timestamp": _iso(self.last_insulin_timestamp),
            "minutes_since_insulin": self.minutes_since_insulin,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "EventTimings":
        return cls(
            last_carb_timestamp=_parse_optional(raw.get("last_carb_timestamp")),
            minutes_since_carb=raw.get("minutes_since_carb"),
            last_insulin_timestamp=_parse_optional(raw.get("last_insulin_timestamp")),
            minutes_since_insulin=raw.get("minutes_since_insulin"),
        )


@dataclass
class Forecast:
    """
    One model's prediction made at `timestamp` for `horizon_minutes` ahead.

    The matched observation is held by id only; observations are owned by the
    reading store and can be pruned independently of any forecast.
    """

    timestamp: datetime
    current_value: float
    model_index: int
    predicted_value: Optional[float] = None
    horizon_minutes: int = DEFAULT_HORIZON_MINUTES
    prediction_count: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    matched_observation_id: Optional[str] = None
    matched_value: Optional[float] = None
    matched_timestamp: Optional[datetime] = None
    event_timings: EventTimings = field(default_factory=EventTimings)

    def __post_init__(self):
        self.timestamp = ensure_utc(self.timestamp)

    @property
    def is_matched(self) -> bool:
        return self.matched_value is not None

    def set_prediction(self, value: Optional[float]) -> None:
        self.predicted_value = None if value is None else float(value)

    def set_match(self, observation: Observation) -> None:
        self.matched_observation_id = observation.id
        self.matched_value = observation.value
        self.matched_timestamp = observation.timestamp

    def clear_match(self) -> None:
        self.matched_observation_id = None
        self.matched_value = None
        self.matched_timestamp = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "horizon_minutes": self.horizon_minutes,
            "current_value": self.current_value,
            "predicted_value": self.predicted_value,
            "model_index": self.model_index,
            "prediction_count": self.prediction_count,
            "matched_observation_id": self.matched_observation_id,
            "matched_value": self.matched_value,
            "matched_timestamp": _iso(self.matched_timestamp),
            "event_timings": self.event_timings.to_dict(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Forecast":
        forecast = cls(
            id=raw["id"],
            timestamp=parse_timestamp(raw["timestamp"]),
            horizon_minutes=int(raw.get("horizon_minutes", DEFAULT_HORIZON_MINUTES)),
            current_value=float(raw["current_value"]),
            predicted_value=raw.get("predicted_value"),
            model_index=int(raw["model_index"]),
            prediction_count=int(raw.get("prediction_count", 0)),
            event_timings=EventTimings.from_dict(raw.get("event_timings") or {}),
        )
        matched_value = raw.get("matched_value")
        matched_id = raw.get("matched_observation_id")
        matched_ts = _parse_optional(raw.get("matched_timestamp"))
        # A partially populated match is treated as no match.
        if matched_value is not None and matched_id and matched_ts:
            forecast.matched_observation_id = matched_id
            forecast.matched_value = float(matched_value)
            forecast.matched_timestamp = matched_ts
        return forecast


@dataclass(frozen=True)
class DecayableEvent:
    """An insulin dose or carbohydrate intake whose effect decays over time."""

    id: str
    kind: EventKind
    timestamp: datetime
    amount: float
    active_window_hours: float
    epsilon: float = decay.DEFAULT_EPSILON

    def __post_init__(self):
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

    def decayed_amount(self, at: datetime) -> float:
        return decay.decayed_amount(self.amount, self.timestamp, at, self.active_window_hours, self.epsilon)

    def is_active(self, at: datetime) -> bool:
        return decay.is_active(self.amount, self.timestamp, at, self.active_window_hours, self.epsilon)


@dataclass(frozen=True)
class WorkoutSnapshot:
    """Most recent workout as seen when a prediction was made."""

    prediction_timestamp: datetime
    workout_type: Optional[str] = None
    last_workout_end: Optional[datetime] = None
    minutes_since_workout: Optional[float] = None
    active_kilocalories: Optional[float] = None
    duration_minutes: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "prediction_timestamp", ensure_utc(self.prediction_timestamp))

    def to_dict(self) -> dict[str, Any]:
        return {
            "prediction_timestamp": _iso(self.prediction_timestamp),
            "workout_type": self.workout_type,
            "last_workout_end": _iso(self.last_workout_end),
            "minutes_since_workout": self.minutes_since_workout,
            "active_kilocalories": self.active_kilocalories,
            "duration_minutes": self.duration_minutes,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "WorkoutSnapshot":
        return cls(
            prediction_timestamp=parse_timestamp(raw["prediction_timestamp"]),
            workout_type=raw.get("workout_type"),
            last_workout_end=_parse_optional(raw.get("last_workout_end")),
            minutes_since_workout=raw.get("minutes_since_workout"),
            active_kilocalories=raw.get("active_kilocalories"),
            duration_minutes=raw.get("duration_minutes"),
        )


@dataclass(frozen=True)
class EnsembleRecord:
    """Derived view over the forecasts sharing one timestamp. Never persisted."""

    timestamp: datetime
    forecasts: dict[int, Forecast]
    average_predicted_value: Optional[float]
    prediction_count: int = 0

    @property
    def current_value(self) -> Optional[float]:
        for index in sorted(self.forecasts):
            return self.forecasts[index].current_value
        return None

    def matched_forecast(self) -> Optional[Forecast]:
        for index in sorted(self.forecasts):
            if self.forecasts[index].is_matched:
                return self.forecasts[index]
        return None

    def timings(self) -> EventTimings:
        for index in sorted(self.forecasts):
            timings = self.forecasts[index].event_timings
            if timings.last_carb_timestamp or timings.last_insulin_timestamp:
                return timings
        return EventTimings()


__all__ = [
    "Observation",
    "Forecast",
    "EventTimings",
    "DecayableEvent",
    "WorkoutSnapshot",
    "EnsembleRecord",
    "EventKind",
]
