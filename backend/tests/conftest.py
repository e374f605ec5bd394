import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from nsforecast.models.domain import Forecast, Observation  # noqa: E402

BASE_TIME = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def at(minutes: float = 0, seconds: float = 0) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes, seconds=seconds)


def obs(minutes: float, value: float, obs_id: str | None = None) -> Observation:
    return Observation(id=obs_id or f"obs-{minutes:g}", timestamp=at(minutes), value=value)


@pytest.fixture
def make_forecast():
    def _make(minutes: float = 0, model_index: int = 1, predicted: float | None = 6.0, current: float = 5.5, **kwargs):
        return Forecast(
            timestamp=at(minutes),
            current_value=current,
            model_index=model_index,
            predicted_value=predicted,
            **kwargs,
        )

    return _make
