import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.triggers.interval import IntervalTrigger

from conftest import at, obs
from nsforecast.core.errors import TransientFetchFailure
from nsforecast.core.settings import Settings
from nsforecast.models.domain import DecayableEvent, WorkoutSnapshot
from nsforecast.models.schemas import Treatment
from nsforecast.services.coordinator import SYNC_JOB_ID, ReconciliationCoordinator
from nsforecast.services.exporter import TabularExporter
from nsforecast.services.forecast_store import ForecastStore
from nsforecast.services.inference import ModelRunner, StandardScaler
from nsforecast.services.reading_store import InMemoryReadingStore
from nsforecast.services.reconciler import PredictionReconciler

NOW = at(60)


class StaticSource:
    def __init__(self, observations=None, error: Exception | None = None):
        self.observations = observations or []
        self.error = error
        self.ranges = []

    async def fetch_range(self, start, end):
        self.ranges.append((start, end))
        if self.error:
            raise self.error
        return list(self.observations)


class GatedReadingStore(InMemoryReadingStore):
    """Parks the first range read until `release` is set."""

    def __init__(self, observations=()):
        super().__init__(observations)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_range(self, start, end):
        if not self.entered.is_set():
            self.entered.set()
            await self.release.wait()
        return await super().fetch_range(start, end)


class LastGlucoseModel:
    def infer(self, feature_window):
        return float(feature_window[-1][0])


def _coordinator(
    tmp_path, source=None, treatment_source=None, reading_store=None, runners=(), clock=lambda: NOW
) -> ReconciliationCoordinator:
    settings = Settings()
    return ReconciliationCoordinator(
        source=source or StaticSource(),
        reading_store=reading_store if reading_store is not None else InMemoryReadingStore(),
        forecast_store=ForecastStore(tmp_path),
        reconciler=PredictionReconciler(settings.matching, clock=clock),
        exporter=TabularExporter(settings.export),
        settings=settings,
        treatment_source=treatment_source,
        runners=runners,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_sync_adds_new_observations_only(tmp_path):
    source = StaticSource([obs(0, 5.0), obs(5, 5.2)])
    coordinator = _coordinator(tmp_path, source)

    first = await coordinator.sync_observations()
    second = await coordinator.sync_observations(hours_back=2)

    assert (first.fetched, first.stored) == (2, 2)
    assert second.stored == 0
    assert source.ranges[0] == (NOW - timedelta(hours=24), NOW)
    assert source.ranges[1] == (NOW - timedelta(hours=2), NOW)


@pytest.mark.asyncio
async def test_sync_failure_is_transient(tmp_path):
    coordinator = _coordinator(tmp_path, StaticSource(error=ConnectionError("boom")))
    with pytest.raises(TransientFetchFailure):
        await coordinator.sync_observations()
    assert await coordinator.reading_store.count() == 0


@pytest.mark.asyncio
async def test_reconcile_stored_matches_and_persists(tmp_path, make_forecast):
    coordinator = _coordinator(tmp_path, StaticSource([obs(19, 7.0), obs(26, 7.5)]))
    coordinator.forecast_store.save_forecasts([make_forecast(0, model_index=1), make_forecast(0, model_index=2)])
    await coordinator.sync_observations()

    result = await coordinator.reconcile_stored()
    assert (result.forecasts, result.newly_matched, result.matched_total) == (2, 2, 2)
    assert all(f.matched_value == 7.0 for f in coordinator.forecast_store.load_forecasts())

    again = await coordinator.reconcile_stored()
    assert again.newly_matched == 0
    assert again.matched_total == 2


@pytest.mark.asyncio
async def test_reconcile_stored_without_forecasts(tmp_path):
    result = await _coordinator(tmp_path).reconcile_stored()
    assert result.forecasts == 0


@pytest.mark.asyncio
async def test_sync_events_backfills_timings(tmp_path, make_forecast):
    treatments = MagicMock()
    treatments.get_treatments_range = AsyncMock(
        return_value=[Treatment(_id="t1", eventType="Meal Bolus", created_at=at(-30), insulin=2.0, carbs=25)]
    )
    coordinator = _coordinator(tmp_path, StaticSource([obs(20, 7.0)]), treatment_source=treatments)
    coordinator.forecast_store.save_forecasts([make_forecast(0)])

    assert await coordinator.sync_events() == 2
    await coordinator.sync_observations()
    await coordinator.reconcile_stored()

    stored = coordinator.forecast_store.load_forecasts()[0]
    assert stored.event_timings.minutes_since_insulin == 30.0
    assert stored.event_timings.minutes_since_carb == 30.0


@pytest.mark.asyncio
async def test_sync_events_without_source_is_noop(tmp_path):
    assert await _coordinator(tmp_path).sync_events() == 0


@pytest.mark.asyncio
async def test_sweep_applies_retention(tmp_path, make_forecast):
    coordinator = _coordinator(tmp_path, StaticSource([obs(20, 7.0)]))
    kept = make_forecast(0)
    kept.set_match(obs(20, 7.0))
    old = make_forecast(-60 * 24 * 40)
    coordinator.forecast_store.save_forecasts([kept, old])
    await coordinator.reading_store.add_many([obs(20, 7.0), obs(-60 * 24 * 40, 6.0)])

    result = await coordinator.sweep()
    assert (result.observations_removed, result.forecasts_removed) == (1, 1)
    remaining = coordinator.forecast_store.load_forecasts()
    assert [f.id for f in remaining] == [kept.id]
    assert remaining[0].matched_observation_id == "obs-20"
    assert await coordinator.reading_store.count() == 1


def test_export_stored_reads_forecasts(tmp_path, make_forecast):
    coordinator = _coordinator(tmp_path)
    coordinator.forecast_store.save_forecasts([make_forecast(0)])
    text = coordinator.export_stored()
    assert text.startswith("Timestamp,Prediction_Count,")
    assert text.count("\r\n") == 2


@pytest.mark.asyncio
async def test_run_cycle_skips_on_transient_failure(tmp_path):
    coordinator = _coordinator(tmp_path, StaticSource(error=ConnectionError("offline")))
    assert await coordinator.run_cycle() is None


def test_schedule_registers_interval_job(tmp_path):
    scheduler = MagicMock()
    coordinator = _coordinator(tmp_path)
    coordinator.schedule(scheduler, interval_minutes=10)

    args, kwargs = scheduler.add_job.call_args
    assert args[0] == coordinator.run_cycle
    assert isinstance(args[1], IntervalTrigger)
    assert args[1].interval == timedelta(minutes=10)
    assert kwargs["id"] == SYNC_JOB_ID
    assert kwargs["replace_existing"] is True


@pytest.mark.asyncio
async def test_run_cycle_writes_export(tmp_path, make_forecast):
    coordinator = _coordinator(tmp_path, StaticSource([obs(20, 7.0)]))
    coordinator.settings.data.data_dir = tmp_path
    coordinator.forecast_store.save_forecasts([make_forecast(0)])

    result = await coordinator.run_cycle()

    assert result.newly_matched == 1
    exported = (tmp_path / "predictions.csv").read_bytes().decode("utf-8")
    assert exported == coordinator.export_stored()


@pytest.mark.asyncio
async def test_sweep_waits_for_reconcile_in_flight(tmp_path, make_forecast):
    store = GatedReadingStore([obs(20, 7.0)])
    coordinator = _coordinator(tmp_path, reading_store=store)
    coordinator.forecast_store.save_forecasts([make_forecast(0), make_forecast(-60 * 24 * 40)])

    reconcile = asyncio.create_task(coordinator.reconcile_stored())
    await store.entered.wait()
    sweep = asyncio.create_task(coordinator.sweep())
    await asyncio.sleep(0)
    assert not sweep.done()

    store.release.set()
    reconciled, swept = await asyncio.gather(reconcile, sweep)

    assert reconciled.forecasts == 2
    assert swept.forecasts_removed == 1
    remaining = coordinator.forecast_store.load_forecasts()
    assert len(remaining) == 1
    assert remaining[0].matched_value == 7.0


@pytest.mark.asyncio
async def test_ingest_forecasts_are_reconciled(tmp_path, make_forecast):
    coordinator = _coordinator(tmp_path, reading_store=InMemoryReadingStore([obs(20, 7.0)]))
    forecast = make_forecast(0)

    assert await coordinator.ingest_forecasts([forecast, make_forecast(0, model_index=2)]) == 2
    assert await coordinator.ingest_forecasts([forecast]) == 0

    result = await coordinator.reconcile_stored()
    assert (result.forecasts, result.newly_matched) == (2, 2)


@pytest.mark.asyncio
async def test_ingest_workouts_replaces_same_prediction_time(tmp_path):
    coordinator = _coordinator(tmp_path)
    first = WorkoutSnapshot(prediction_timestamp=at(0), workout_type="Walking")
    assert await coordinator.ingest_workouts([first]) == 1

    updated = WorkoutSnapshot(prediction_timestamp=at(0), workout_type="Running", duration_minutes=30.0)
    assert await coordinator.ingest_workouts([updated, WorkoutSnapshot(prediction_timestamp=at(5))]) == 1
    workouts = coordinator.forecast_store.load_workouts()
    assert [w.workout_type for w in workouts] == ["Running", None]


def _runner(model_index: int, timesteps: int = 3) -> ModelRunner:
    return ModelRunner(
        model_index=model_index,
        model=LastGlucoseModel(),
        input_scaler=StandardScaler(mean=[0.0, 0.0, 0.0], scale=[1.0, 1.0, 1.0]),
        window_shape=(timesteps, 3),
    )


@pytest.mark.asyncio
async def test_forecast_latest_runs_models_once_per_reading(tmp_path):
    store = InMemoryReadingStore([obs(45, 6.8), obs(50, 7.1), obs(55, 7.4)])
    coordinator = _coordinator(tmp_path, reading_store=store, runners=[_runner(1), _runner(2)])
    coordinator.events = [
        DecayableEvent(id="dose", kind="insulin", timestamp=at(40), amount=2.0, active_window_hours=4.0)
    ]

    forecasts = await coordinator.forecast_latest()

    assert [f.model_index for f in forecasts] == [1, 2]
    assert all(f.timestamp == at(55) for f in forecasts)
    assert all(f.current_value == 7.4 for f in forecasts)
    assert all(f.predicted_value == pytest.approx(7.4) for f in forecasts)
    assert all(f.prediction_count == 1 for f in forecasts)
    assert len(coordinator.forecast_store.load_forecasts()) == 2

    assert await coordinator.forecast_latest() == []
    assert len(coordinator.forecast_store.load_forecasts()) == 2


@pytest.mark.asyncio
async def test_forecast_latest_skips_short_history(tmp_path):
    store = InMemoryReadingStore([obs(55, 7.4)])
    coordinator = _coordinator(tmp_path, reading_store=store, runners=[_runner(1)])
    assert await coordinator.forecast_latest() == []
    assert coordinator.forecast_store.load_forecasts() == []


@pytest.mark.asyncio
async def test_forecast_latest_without_runners_is_noop(tmp_path):
    coordinator = _coordinator(tmp_path, reading_store=InMemoryReadingStore([obs(55, 7.4)]))
    assert await coordinator.forecast_latest() == []


@pytest.mark.asyncio
async def test_run_cycle_stores_fresh_forecasts(tmp_path):
    source = StaticSource([obs(40, 6.5), obs(45, 6.9), obs(50, 7.2)])
    coordinator = _coordinator(tmp_path, source, runners=[_runner(1)])
    coordinator.settings.data.data_dir = tmp_path

    await coordinator.run_cycle()

    stored = coordinator.forecast_store.load_forecasts()
    assert len(stored) == 1
    assert stored[0].timestamp == at(50)
    assert stored[0].predicted_value == pytest.approx(7.2)
    assert (tmp_path / "predictions.csv").exists()
