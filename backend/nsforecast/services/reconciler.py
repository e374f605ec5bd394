from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from nsforecast.core.errors import TransientFetchFailure
from nsforecast.core.settings import MatchingConfig
from nsforecast.models.domain import Forecast, Observation
from nsforecast.services.interval_matcher import find_match, within_acceptance_window
from nsforecast.services.reading_store import ObservationSource, ReadingStore, dedupe_observations
from nsforecast.utils.timezone import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class PredictionReconciler:
    """
    Matches forecasts against later observations and writes the result back
    onto each forecast.

    Re-running is safe: every forecast ends a pass either matched to an
    observation inside the acceptance window or with its match fields cleared.
    Only one async pass runs at a time per reconciler.
    """

    def __init__(self, matching: Optional[MatchingConfig] = None, clock: Callable[[], datetime] = utcnow):
        self.matching = matching or MatchingConfig()
        self.clock = clock
        self._lock = asyncio.Lock()

    def relevant_window(self, forecasts: Sequence[Forecast], now: Optional[datetime] = None) -> Optional[tuple[datetime, datetime]]:
        if not forecasts:
            return None
        now = ensure_utc(now or self.clock())
        timestamps = [f.timestamp for f in forecasts]
        start = min(timestamps)
        end = max(max(timestamps) + timedelta(hours=self.matching.buffer_hours), now)
        return start, end

    def reconcile(
        self,
        forecasts: Sequence[Forecast],
        observations: Sequence[Observation],
        now: Optional[datetime] = None,
    ) -> int:
        """
        Matches each forecast independently. Returns how many forecasts gained
        an accepted match they did not already hold before this call.
        """
        if not forecasts:
            return 0

        start, end = self.relevant_window(forecasts, now)
        candidates = sorted(
            (o for o in dedupe_observations(observations) if start <= o.timestamp <= end),
            key=lambda o: o.timestamp,
        )
        logger.info(
            f"Reconciling {len(forecasts)} forecasts against {len(candidates)} observations "
            f"({start.isoformat()} to {end.isoformat()})"
        )

        newly_matched = 0
        rejected = 0
        for forecast in forecasts:
            previous_id = forecast.matched_observation_id
            match = find_match(
                forecast.timestamp,
                candidates,
                horizon_minutes=self.matching.horizon_minutes,
                tolerance_minutes=self.matching.tolerance_minutes,
                presorted=True,
            )
            if match is None:
                forecast.clear_match()
                continue

            if within_acceptance_window(
                match.elapsed_minutes,
                self.matching.acceptance_min_minutes,
                self.matching.acceptance_max_minutes,
            ):
                forecast.set_match(match.observation)
                if previous_id != match.observation.id:
                    newly_matched += 1
            else:
                logger.debug(
                    f"Ignoring match for forecast {forecast.id}: "
                    f"{match.elapsed_minutes:.1f} min is outside the acceptance window"
                )
                forecast.clear_match()
                rejected += 1

        matched_total = sum(1 for f in forecasts if f.is_matched)
        logger.info(f"Matched {matched_total}/{len(forecasts)} forecasts ({newly_matched} new, {rejected} rejected)")
        return newly_matched

    async def reconcile_from_source(
        self,
        forecasts: Sequence[Forecast],
        source: ObservationSource,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Fetches the observations covering the forecasts, then reconciles.
        A failed or cancelled fetch leaves every forecast untouched.
        """
        async with self._lock:
            now = ensure_utc(now or self.clock())
            window = self.relevant_window(forecasts, now)
            if window is None:
                return 0
            try:
                observations = await source.fetch_range(*window)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Observation fetch failed, no forecasts updated", extra={"error": str(exc)})
                raise TransientFetchFailure(f"Fetching observations failed: {exc}") from exc
            return self.reconcile(forecasts, observations, now=now)

    async def refresh_references(self, forecasts: Sequence[Forecast], store: ReadingStore) -> int:
        """Clears matches whose observation has since been pruned. Returns how many were cleared."""
        cleared = 0
        async with self._lock:
            for forecast in forecasts:
                if not forecast.matched_observation_id:
                    continue
                if await store.get(forecast.matched_observation_id) is None:
                    forecast.clear_match()
                    cleared += 1
        if cleared:
            logger.info(f"Cleared {cleared} matches pointing at pruned observations")
        return cleared


__all__ = ["PredictionReconciler"]
