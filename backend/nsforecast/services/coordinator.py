from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol, Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from nsforecast.core.errors import MalformedFeatureWindow, ReconciliationError, TransientFetchFailure
from nsforecast.core.settings import Settings
from nsforecast.models.domain import DecayableEvent, Forecast, WorkoutSnapshot
from nsforecast.models.schemas import ReconcileResult, SweepResult, SyncResult, Treatment
from nsforecast.services.decay import DecayProfile
from nsforecast.services.event_log import EventLog, InMemoryEventLog, backfill_event_timings, events_from_treatments
from nsforecast.services.exporter import EventLookup, TabularExporter, write_export
from nsforecast.services.forecast_store import ForecastStore
from nsforecast.services.inference import ModelRunner, build_feature_window, run_models
from nsforecast.services.reading_store import ObservationSource, ReadingStore, StoreObservationSource
from nsforecast.services.reconciler import PredictionReconciler
from nsforecast.utils.timezone import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "forecast_sync_reconcile"
READING_INTERVAL_MINUTES = 5


class TreatmentSource(Protocol):
    async def get_treatments_range(self, start_dt: datetime, end_dt: datetime) -> list[Treatment]:
        ...


class ReconciliationCoordinator:
    """
    Runs the periodic pipeline: pull observations into the reading store,
    reconcile stored forecasts against it, export, and apply retention.

    Every operation that rewrites the forecast store holds `_lock` from load
    to save, so ingestion, reconcile and sweep never interleave.
    """

    def __init__(
        self,
        source: ObservationSource,
        reading_store: ReadingStore,
        forecast_store: ForecastStore,
        reconciler: PredictionReconciler,
        exporter: TabularExporter,
        settings: Settings,
        event_log: Optional[EventLog] = None,
        treatment_source: Optional[TreatmentSource] = None,
        runners: Sequence[ModelRunner] = (),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.source = source
        self.reading_store = reading_store
        self.forecast_store = forecast_store
        self.reconciler = reconciler
        self.exporter = exporter
        self.settings = settings
        self.event_log = event_log
        self.treatment_source = treatment_source
        self.runners = list(runners)
        self.clock = clock
        self.events: list[DecayableEvent] = []
        self._lock = asyncio.Lock()

    def _lookback(self, hours_back: Optional[float]) -> tuple[datetime, datetime]:
        end = ensure_utc(self.clock())
        return end - timedelta(hours=hours_back or self.settings.scheduler.sync_hours_back), end

    async def sync_observations(self, hours_back: Optional[float] = None) -> SyncResult:
        start, end = self._lookback(hours_back)
        try:
            observations = await self.source.fetch_range(start, end)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Observation sync failed", extra={"error": str(exc)})
            raise TransientFetchFailure(f"Observation sync failed: {exc}") from exc
        stored = await self.reading_store.add_many(observations)
        logger.info(f"Synced observations: {len(observations)} fetched, {stored} new")
        return SyncResult(fetched=len(observations), stored=stored)

    async def sync_events(self, hours_back: Optional[float] = None) -> int:
        """Rebuilds the event log from recent treatments. Returns the number of events."""
        if self.treatment_source is None:
            return 0
        start, end = self._lookback(hours_back)
        # Timings reach back up to the longest activity window before the oldest forecast.
        start -= timedelta(hours=max(self.settings.decay.insulin_window_hours, self.settings.decay.carb_window_hours))
        try:
            treatments = await self.treatment_source.get_treatments_range(start, end)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Treatment sync failed", extra={"error": str(exc)})
            raise TransientFetchFailure(f"Treatment sync failed: {exc}") from exc
        eps = self.settings.decay.epsilon
        events = events_from_treatments(
            treatments,
            insulin_profile=DecayProfile(self.settings.decay.insulin_window_hours, eps),
            carb_profile=DecayProfile(self.settings.decay.carb_window_hours, eps),
        )
        self.events = events
        self.event_log = InMemoryEventLog(events)
        logger.info(f"Loaded {len(events)} insulin/carb events from {len(treatments)} treatments")
        return len(events)

    async def ingest_forecasts(self, forecasts: Iterable[Forecast]) -> int:
        """Adds or replaces forecasts by id. Returns how many were new."""
        async with self._lock:
            return self._ingest_forecasts(list(forecasts))

    def _ingest_forecasts(self, forecasts: list[Forecast]) -> int:
        added = self.forecast_store.upsert(forecasts)
        logger.info(f"Stored {len(forecasts)} forecasts ({added} new)")
        return added

    async def ingest_workouts(self, workouts: Iterable[WorkoutSnapshot]) -> int:
        async with self._lock:
            workouts = list(workouts)
            added = self.forecast_store.upsert_workouts(workouts)
        logger.info(f"Stored {len(workouts)} workout snapshots ({added} new)")
        return added

    async def forecast_latest(self) -> list[Forecast]:
        """Runs the configured models on the newest readings and stores the result."""
        async with self._lock:
            return await self._forecast_latest()

    async def _forecast_latest(self) -> list[Forecast]:
        if not self.runners:
            return []
        timesteps = max(runner.window_shape[0] for runner in self.runners)
        now = ensure_utc(self.clock())
        # Twice the window span tolerates a few missed readings.
        recent = await self.reading_store.fetch_range(
            now - timedelta(minutes=2 * timesteps * READING_INTERVAL_MINUTES), now
        )
        try:
            window = build_feature_window(recent, self.events, timesteps)
        except MalformedFeatureWindow as exc:
            logger.warning(f"Skipping inference: {exc}")
            return []

        latest = recent[-1]
        stored = self.forecast_store.load_forecasts()
        if any(f.timestamp == latest.timestamp for f in stored):
            logger.debug(f"Forecasts for {latest.timestamp.isoformat()} already stored")
            return []

        sequence = len({f.timestamp for f in stored}) + 1
        forecasts = run_models(
            latest.timestamp,
            latest.value,
            window,
            self.runners,
            prediction_count=sequence,
            horizon_minutes=int(self.settings.matching.horizon_minutes),
        )
        self._ingest_forecasts(forecasts)
        return forecasts

    async def reconcile_stored(self) -> ReconcileResult:
        async with self._lock:
            return await self._reconcile_stored()

    async def _reconcile_stored(self) -> ReconcileResult:
        forecasts = self.forecast_store.load_forecasts()
        if not forecasts:
            return ReconcileResult(forecasts=0, newly_matched=0, matched_total=0)

        now = ensure_utc(self.clock())
        newly_matched = await self.reconciler.reconcile_from_source(
            forecasts, StoreObservationSource(self.reading_store), now=now
        )
        cleared = await self.reconciler.refresh_references(forecasts, self.reading_store)
        if self.event_log is not None:
            backfill_event_timings(
                forecasts,
                self.event_log,
                insulin_hours=self.settings.decay.insulin_window_hours,
                carb_hours=self.settings.decay.carb_window_hours,
            )
        self.forecast_store.save_forecasts(forecasts)

        return ReconcileResult(
            forecasts=len(forecasts),
            newly_matched=newly_matched,
            matched_total=sum(1 for f in forecasts if f.is_matched),
            references_cleared=cleared,
        )

    def export_stored(self) -> str:
        related = EventLookup(
            workouts=self.forecast_store.load_workouts(),
            workout_tolerance_seconds=self.settings.export.workout_tolerance_seconds,
        )
        return self.exporter.export(self.forecast_store.load_forecasts(), related)

    def write_export_file(self, path: Optional[Path] = None) -> Path:
        target = path or Path(self.settings.data.data_dir) / self.settings.export.filename
        return write_export(target, self.export_stored())

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        async with self._lock:
            return await self._sweep(now)

    async def _sweep(self, now: Optional[datetime] = None) -> SweepResult:
        cutoff = ensure_utc(now or self.clock()) - timedelta(days=self.settings.retention.days)
        observations_removed = await self.reading_store.prune(cutoff)
        forecasts_removed = self.forecast_store.prune(cutoff)
        if observations_removed:
            # Matches may now point at observations that no longer exist.
            forecasts = self.forecast_store.load_forecasts()
            if await self.reconciler.refresh_references(forecasts, self.reading_store):
                self.forecast_store.save_forecasts(forecasts)
        logger.info(
            f"Retention sweep before {cutoff.isoformat()}: "
            f"{observations_removed} observations, {forecasts_removed} forecasts removed"
        )
        return SweepResult(observations_removed=observations_removed, forecasts_removed=forecasts_removed)

    async def run_cycle(self) -> Optional[ReconcileResult]:
        """Scheduled job body. A failed fetch skips the cycle; the next run retries."""
        try:
            await self.sync_observations()
            await self.sync_events()
            async with self._lock:
                await self._forecast_latest()
                result = await self._reconcile_stored()
                await self._sweep()
                self.write_export_file()
        except ReconciliationError as exc:
            logger.warning(f"Reconciliation cycle skipped: {exc}")
            return None
        return result

    def schedule(self, scheduler: AsyncIOScheduler, interval_minutes: Optional[int] = None):
        interval_minutes = interval_minutes or self.settings.scheduler.interval_minutes
        job = scheduler.add_job(
            self.run_cycle,
            IntervalTrigger(minutes=interval_minutes),
            id=SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled task '{SYNC_JOB_ID}' every {interval_minutes} minutes")
        return job


__all__ = ["ReconciliationCoordinator", "SYNC_JOB_ID"]
