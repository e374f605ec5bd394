from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from nsforecast.models.domain import Forecast, WorkoutSnapshot
from nsforecast.utils.timezone import ensure_utc

logger = logging.getLogger(__name__)

FORECASTS_FILE = "forecasts.json"
WORKOUTS_FILE = "workouts.json"


class SimpleFileLock:
    def __init__(self, path: Path, timeout: float = 5.0):
        self.lock_path = str(path) + ".lock"
        self.timeout = timeout
        self._fd: int | None = None

    def acquire(self) -> None:
        start = time.time()
        while True:
            try:
                self._fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR)
                return
            except FileExistsError:
                if time.time() - start > self.timeout:
                    raise TimeoutError(f"Timeout waiting for lock {self.lock_path}")
                time.sleep(0.05)

    def release(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


@contextmanager
def _json_lock(path: Path):
    with SimpleFileLock(path):
        yield


@dataclass
class ForecastStore:
    """Forecasts and workout snapshots as JSON lists under `data_dir`."""

    data_dir: Path

    def _path(self, filename: str) -> Path:
        path = Path(self.data_dir) / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def read_json(self, filename: str, default: Any) -> Any:
        path = self._path(filename)
        with _json_lock(path):
            if not path.exists():
                return deepcopy(default)
            with path.open("r", encoding="utf-8") as fh:
                return json.load(fh)

    def write_json(self, filename: str, data: Any) -> None:
        path = self._path(filename)
        tmp = path.with_name(path.name + ".tmp")
        with _json_lock(path):
            with tmp.open("w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
            os.replace(tmp, path)

    def load_forecasts(self) -> list[Forecast]:
        forecasts = []
        for raw in self.read_json(FORECASTS_FILE, []):
            try:
                forecasts.append(Forecast.from_dict(raw))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(f"Skipping unreadable forecast record: {exc}")
        return sorted(forecasts, key=lambda f: (f.timestamp, f.model_index))

    def save_forecasts(self, forecasts: Iterable[Forecast]) -> list[Forecast]:
        ordered = sorted(forecasts, key=lambda f: (f.timestamp, f.model_index))
        self.write_json(FORECASTS_FILE, [f.to_dict() for f in ordered])
        return ordered

    def upsert(self, new_forecasts: Iterable[Forecast]) -> int:
        """Adds or replaces forecasts by id. Returns how many ids were not stored before."""
        by_id = {f.id: f for f in self.load_forecasts()}
        added = 0
        for forecast in new_forecasts:
            if forecast.id not in by_id:
                added += 1
            by_id[forecast.id] = forecast
        self.save_forecasts(by_id.values())
        return added

    def prune(self, older_than: datetime) -> int:
        cutoff = ensure_utc(older_than)
        forecasts = self.load_forecasts()
        kept = [f for f in forecasts if f.timestamp >= cutoff]
        removed = len(forecasts) - len(kept)
        if removed:
            self.save_forecasts(kept)

        workouts = self.load_workouts()
        kept_workouts = [w for w in workouts if w.prediction_timestamp >= cutoff]
        if len(kept_workouts) != len(workouts):
            self.save_workouts(kept_workouts)

        logger.info(f"Pruned {removed} forecasts older than {cutoff.isoformat()}")
        return removed

    def load_workouts(self) -> list[WorkoutSnapshot]:
        workouts = []
        for raw in self.read_json(WORKOUTS_FILE, []):
            try:
                workouts.append(WorkoutSnapshot.from_dict(raw))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(f"Skipping unreadable workout record: {exc}")
        return sorted(workouts, key=lambda w: w.prediction_timestamp)

    def save_workouts(self, workouts: Iterable[WorkoutSnapshot]) -> None:
        ordered = sorted(workouts, key=lambda w: w.prediction_timestamp)
        self.write_json(WORKOUTS_FILE, [w.to_dict() for w in ordered])

    def upsert_workouts(self, new_workouts: Iterable[WorkoutSnapshot]) -> int:
        """One snapshot per prediction timestamp; a later one replaces the stored one."""
        by_ts = {w.prediction_timestamp: w for w in self.load_workouts()}
        added = 0
        for workout in new_workouts:
            if workout.prediction_timestamp not in by_ts:
                added += 1
            by_ts[workout.prediction_timestamp] = workout
        self.save_workouts(by_ts.values())
        return added


__all__ = ["ForecastStore", "SimpleFileLock"]
