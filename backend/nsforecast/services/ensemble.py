from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Iterable, Optional, Sequence

from nsforecast.models.domain import EnsembleRecord, Forecast

logger = logging.getLogger(__name__)


def _usable(value: Optional[float]) -> bool:
    # A glucose concentration of zero or below is not physiological; it can only be an
    # unset value carried over from stores that used 0.0 for "missing".
    return value is not None and value > 0.0


def average_values(values: Iterable[Optional[float]]) -> Optional[float]:
    valid = [float(v) for v in values if _usable(v)]
    if not valid:
        return None
    return sum(valid) / len(valid)


def average(forecasts_for_same_timestamp: Iterable[Forecast]) -> Optional[float]:
    return average_values(f.predicted_value for f in forecasts_for_same_timestamp)


def group_by_timestamp(forecasts: Sequence[Forecast]) -> list[EnsembleRecord]:
    """
    One record per forecast timestamp, ascending. Recomputed on every call.
    If two forecasts claim the same model slot, the later one in input order wins.
    """
    grouped: dict[datetime, dict[int, Forecast]] = defaultdict(dict)
    for forecast in forecasts:
        slot = grouped[forecast.timestamp]
        if forecast.model_index in slot:
            logger.warning(
                f"Duplicate forecast for model {forecast.model_index} at {forecast.timestamp.isoformat()}"
            )
        slot[forecast.model_index] = forecast

    records = []
    for ts in sorted(grouped):
        by_model = grouped[ts]
        counts = [f.prediction_count for f in by_model.values() if f.prediction_count]
        records.append(
            EnsembleRecord(
                timestamp=ts,
                forecasts=dict(sorted(by_model.items())),
                average_predicted_value=average(by_model.values()),
                prediction_count=max(counts) if counts else 0,
            )
        )
    return records


__all__ = ["average", "average_values", "group_by_timestamp"]
