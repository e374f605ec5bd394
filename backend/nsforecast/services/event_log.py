from __future__ import annotations

import bisect
import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional, Protocol, Sequence

from nsforecast.models.domain import DecayableEvent, EventKind, Forecast
from nsforecast.models.schemas import Treatment
from nsforecast.services.decay import CARB_PROFILE, INSULIN_PROFILE, DecayProfile
from nsforecast.utils.timezone import ensure_utc, minutes_between

logger = logging.getLogger(__name__)

INSULIN_LOOKBACK_HOURS = 4.0
CARB_LOOKBACK_HOURS = 5.0


class EventLog(Protocol):
    def fetch_last(self, kind: EventKind, before: datetime, within_hours: float) -> Optional[DecayableEvent]:
        ...


class InMemoryEventLog:
    """Treatment events indexed per kind for latest-before lookups."""

    def __init__(self, events: Iterable[DecayableEvent] = ()):
        self._events: dict[str, list[DecayableEvent]] = {"insulin": [], "carbs": []}
        self._times: dict[str, list[datetime]] = {"insulin": [], "carbs": []}
        seen: set[str] = set()
        for event in sorted(events, key=lambda e: e.timestamp):
            if event.id in seen:
                continue
            seen.add(event.id)
            self._events[event.kind].append(event)
            self._times[event.kind].append(event.timestamp)

    def events(self, kind: EventKind) -> list[DecayableEvent]:
        return list(self._events[kind])

    def fetch_last(self, kind: EventKind, before: datetime, within_hours: float) -> Optional[DecayableEvent]:
        before = ensure_utc(before)
        times = self._times[kind]
        idx = bisect.bisect_right(times, before)
        if idx == 0:
            return None
        candidate = self._events[kind][idx - 1]
        if candidate.timestamp < before - timedelta(hours=within_hours):
            return None
        return candidate


def events_from_treatments(
    treatments: Iterable[Treatment],
    insulin_profile: DecayProfile = INSULIN_PROFILE,
    carb_profile: DecayProfile = CARB_PROFILE,
) -> list[DecayableEvent]:
    """A treatment with both insulin and carbs yields one event of each kind."""
    events: list[DecayableEvent] = []
    for treatment in treatments:
        if treatment.created_at is None:
            continue
        ts = ensure_utc(treatment.created_at)
        base_id = treatment.id or f"{int(ts.timestamp() * 1000)}"
        if treatment.insulin and treatment.insulin > 0:
            events.append(DecayableEvent(
                id=f"{base_id}:insulin",
                kind="insulin",
                timestamp=ts,
                amount=float(treatment.insulin),
                active_window_hours=insulin_profile.active_window_hours,
                epsilon=insulin_profile.epsilon,
            ))
        if treatment.carbs and treatment.carbs > 0:
            events.append(DecayableEvent(
                id=f"{base_id}:carbs",
                kind="carbs",
                timestamp=ts,
                amount=float(treatment.carbs),
                active_window_hours=carb_profile.active_window_hours,
                epsilon=carb_profile.epsilon,
            ))
    return events


def _needs_refresh(last: Optional[datetime], minutes_since: Optional[float], prediction_time: datetime, hours: float) -> bool:
    if last is None or minutes_since is None or minutes_since < 0:
        return True
    return minutes_between(last, prediction_time) > hours * 60


def backfill_event_timings(
    forecasts: Sequence[Forecast],
    event_log: EventLog,
    insulin_hours: float = INSULIN_LOOKBACK_HOURS,
    carb_hours: float = CARB_LOOKBACK_HOURS,
) -> tuple[int, int]:
    """
    Attaches the latest insulin and carb event preceding each forecast.
    Only forecasts with missing, negative or out-of-window timings are touched.
    Returns (insulin_updated, carb_updated).
    """
    insulin_updated = 0
    carb_updated = 0
    for forecast in forecasts:
        timings = forecast.event_timings
        ts = forecast.timestamp

        if _needs_refresh(timings.last_insulin_timestamp, timings.minutes_since_insulin, ts, insulin_hours):
            found = event_log.fetch_last("insulin", before=ts, within_hours=insulin_hours)
            timings.set_insulin(found.timestamp if found else None, ts)
            if found:
                insulin_updated += 1

        if _needs_refresh(timings.last_carb_timestamp, timings.minutes_since_carb, ts, carb_hours):
            found = event_log.fetch_last("carbs", before=ts, within_hours=carb_hours)
            timings.set_carb(found.timestamp if found else None, ts)
            if found:
                carb_updated += 1

    logger.info(f"Backfilled event timings: {insulin_updated} insulin, {carb_updated} carbs")
    return insulin_updated, carb_updated


__all__ = [
    "EventLog",
    "InMemoryEventLog",
    "events_from_treatments",
    "backfill_event_timings",
    "INSULIN_LOOKBACK_HOURS",
    "CARB_LOOKBACK_HOURS",
]
