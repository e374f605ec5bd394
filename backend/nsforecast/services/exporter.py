"""
CSV export of reconciled forecasts.

One row per forecast timestamp, ascending. Every optional value renders as
an empty cell so the numeric columns stay parseable. Timestamps use a fixed
UTC offset from configuration, never the host's local time, so the same input
gives byte-identical output anywhere.
"""

from __future__ import annotations

import csv
import io
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Sequence

from nsforecast.core.settings import ExportConfig
from nsforecast.models.domain import EnsembleRecord, Forecast, WorkoutSnapshot
from nsforecast.services.ensemble import group_by_timestamp
from nsforecast.services.interval_matcher import find_nearest
from nsforecast.services.units import format_primary, format_secondary
from nsforecast.utils.timezone import fixed_offset, format_iso

logger = logging.getLogger(__name__)

LINE_TERMINATOR = "\r\n"


def _fmt(value: Optional[float], digits: int = 1) -> str:
    return "" if value is None else f"{value:.{digits}f}"


@dataclass
class EventLookup:
    """Side data joined onto export rows that is not stored on the forecasts."""

    workouts: list[WorkoutSnapshot] = field(default_factory=list)
    workout_tolerance_seconds: float = 30.0

    def workout_for(self, timestamp: datetime) -> Optional[WorkoutSnapshot]:
        return find_nearest(
            timestamp,
            self.workouts,
            key=lambda w: w.prediction_timestamp,
            tolerance_seconds=self.workout_tolerance_seconds,
        )


class TabularExporter:
    def __init__(self, config: Optional[ExportConfig] = None):
        self.config = config or ExportConfig()
        self.tz = fixed_offset(self.config.utc_offset_minutes)

    def model_indices(self, forecasts: Iterable[Forecast]) -> list[int]:
        if self.config.model_indices:
            return list(self.config.model_indices)
        return sorted({f.model_index for f in forecasts})

    def header(self, model_indices: Sequence[int]) -> list[str]:
        columns = ["Timestamp"]
        if self.config.include_prediction_count:
            columns.append("Prediction_Count")
        for n in model_indices:
            columns += [
                f"M{n}_Current_BG_mmol",
                f"M{n}_Current_BG_mgdl",
                f"M{n}_Pred_20min_mmol",
                f"M{n}_Pred_20min_mgdl",
            ]
        columns += [
            "Avg_Pred_20min_mmol",
            "Avg_Pred_20min_mgdl",
            "Actual_BG_After_20min_mmol",
            "Actual_BG_After_20min_mgdl",
            "Last_Carb_Entry_Timestamp",
            "Time_Since_Last_Carb_Minutes",
            "Last_Insulin_Entry_Timestamp",
            "Time_Since_Last_Insulin_Minutes",
            "Last_Workout_Type",
            "Last_Workout_End_Timestamp",
            "Time_Since_Workout_Minutes",
            "Workout_Calories",
            "Workout_Duration_Minutes",
        ]
        return columns

    def row(
        self,
        record: EnsembleRecord,
        sequence: int,
        model_indices: Sequence[int],
        related: EventLookup,
    ) -> list[str]:
        cells = [format_iso(record.timestamp, self.tz)]
        if self.config.include_prediction_count:
            cells.append(str(sequence))

        for n in model_indices:
            forecast = record.forecasts.get(n)
            if forecast is None:
                cells += ["", "", "", ""]
                continue
            cells += [
                format_primary(forecast.current_value),
                format_secondary(forecast.current_value),
                format_primary(forecast.predicted_value),
                format_secondary(forecast.predicted_value),
            ]

        cells += [
            format_primary(record.average_predicted_value),
            format_secondary(record.average_predicted_value),
        ]

        matched = record.matched_forecast()
        actual = matched.matched_value if matched else None
        cells += [format_primary(actual), format_secondary(actual)]

        timings = record.timings()
        if timings.last_carb_timestamp and (timings.minutes_since_carb or 0) >= 0:
            cells += [format_iso(timings.last_carb_timestamp, self.tz), _fmt(timings.minutes_since_carb)]
        else:
            cells += ["", ""]
        if timings.last_insulin_timestamp and (timings.minutes_since_insulin or 0) >= 0:
            cells += [format_iso(timings.last_insulin_timestamp, self.tz), _fmt(timings.minutes_since_insulin)]
        else:
            cells += ["", ""]

        workout = related.workout_for(record.timestamp)
        if workout is None:
            cells += ["", "", "", "", ""]
        else:
            cells += [
                workout.workout_type or "",
                format_iso(workout.last_workout_end, self.tz),
                _fmt(workout.minutes_since_workout),
                _fmt(workout.active_kilocalories),
                _fmt(workout.duration_minutes),
            ]
        return cells

    def export(self, forecasts: Sequence[Forecast], related: Optional[EventLookup] = None) -> str:
        related = related or EventLookup(workout_tolerance_seconds=self.config.workout_tolerance_seconds)
        model_indices = self.model_indices(forecasts)
        records = group_by_timestamp(forecasts)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator=LINE_TERMINATOR)
        writer.writerow(self.header(model_indices))
        for sequence, record in enumerate(records, start=1):
            writer.writerow(self.row(record, sequence, model_indices, related))

        matched = sum(1 for r in records if r.matched_forecast() is not None)
        logger.info(f"Exported {len(records)} rows ({matched} with actual values) from {len(forecasts)} forecasts")
        return buffer.getvalue()


def write_export(path: Path, content: str) -> Path:
    """Writes the export next to its destination first, then swaps it in."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
            fh.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    return path


__all__ = ["EventLookup", "TabularExporter", "write_export", "LINE_TERMINATOR"]
