from conftest import at
from nsforecast.models.domain import DecayableEvent
from nsforecast.models.schemas import Treatment
from nsforecast.services.event_log import InMemoryEventLog, backfill_event_timings, events_from_treatments


def _event(kind: str, minutes: float, event_id: str | None = None, amount: float = 2.0) -> DecayableEvent:
    return DecayableEvent(
        id=event_id or f"{kind}-{minutes:g}",
        kind=kind,
        timestamp=at(minutes),
        amount=amount,
        active_window_hours=4.0 if kind == "insulin" else 5.0,
    )


def test_fetch_last_returns_latest_before():
    log = InMemoryEventLog([_event("insulin", -120), _event("insulin", -30), _event("insulin", 10)])
    found = log.fetch_last("insulin", before=at(0), within_hours=4)
    assert found.id == "insulin--30"


def test_fetch_last_includes_event_at_reference_time():
    log = InMemoryEventLog([_event("carbs", 0)])
    assert log.fetch_last("carbs", before=at(0), within_hours=5).id == "carbs-0"


def test_fetch_last_respects_lookback():
    log = InMemoryEventLog([_event("carbs", -301)])
    assert log.fetch_last("carbs", before=at(0), within_hours=5) is None


def test_kinds_are_kept_apart():
    log = InMemoryEventLog([_event("carbs", -10)])
    assert log.fetch_last("insulin", before=at(0), within_hours=4) is None


def test_duplicate_ids_are_ignored():
    log = InMemoryEventLog([_event("insulin", -30, "dup"), _event("insulin", -20, "dup")])
    assert len(log.events("insulin")) == 1


def test_events_from_treatments_splits_combined_entries():
    treatments = [
        Treatment(_id="t1", eventType="Meal Bolus", created_at=at(-15), insulin=3.5, carbs=40),
        Treatment(_id="t2", eventType="Note", created_at=at(-10)),
        Treatment(_id="t3", eventType="Correction Bolus", created_at=None, insulin=1.0),
    ]
    events = events_from_treatments(treatments)
    assert sorted(e.id for e in events) == ["t1:carbs", "t1:insulin"]
    carbs = next(e for e in events if e.kind == "carbs")
    assert carbs.amount == 40.0
    assert carbs.active_window_hours == 5.0


def test_backfill_fills_missing_timings(make_forecast):
    forecast = make_forecast(0)
    log = InMemoryEventLog([_event("insulin", -45), _event("carbs", -20)])

    assert backfill_event_timings([forecast], log) == (1, 1)
    assert forecast.event_timings.last_insulin_timestamp == at(-45)
    assert forecast.event_timings.minutes_since_insulin == 45.0
    assert forecast.event_timings.minutes_since_carb == 20.0


def test_backfill_keeps_valid_timings(make_forecast):
    forecast = make_forecast(0)
    forecast.event_timings.set_insulin(at(-60), forecast.timestamp)
    forecast.event_timings.set_carb(at(-90), forecast.timestamp)
    log = InMemoryEventLog([_event("insulin", -5), _event("carbs", -5)])

    assert backfill_event_timings([forecast], log) == (0, 0)
    assert forecast.event_timings.last_insulin_timestamp == at(-60)


def test_backfill_replaces_negative_or_stale_timings(make_forecast):
    forecast = make_forecast(0)
    forecast.event_timings.last_insulin_timestamp = at(10)
    forecast.event_timings.minutes_since_insulin = -10.0
    forecast.event_timings.set_carb(at(-400), forecast.timestamp)
    log = InMemoryEventLog([_event("insulin", -50)])

    assert backfill_event_timings([forecast], log) == (1, 0)
    assert forecast.event_timings.minutes_since_insulin == 50.0
    assert forecast.event_timings.last_carb_timestamp is None
    assert forecast.event_timings.minutes_since_carb is None
