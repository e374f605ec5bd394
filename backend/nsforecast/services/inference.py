"""
Boundary to the forecasting models.

The models themselves are opaque: anything with `infer(window) -> float`.
This module owns the parts around them that are ours to get right, namely
feature-window validation, input scaling, output de-scaling and turning one
inference pass into a set of per-model Forecast records.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, Sequence

import numpy as np

from nsforecast.core.errors import MalformedFeatureWindow, ScalerConfigurationMissing
from nsforecast.models.domain import DEFAULT_HORIZON_MINUTES, DecayableEvent, Forecast, Observation
from nsforecast.services.decay import total_active

logger = logging.getLogger(__name__)


class ForecastModel(Protocol):
    def infer(self, feature_window: np.ndarray) -> float:
        ...


@dataclass(frozen=True)
class StandardScaler:
    """Z-score scaling per feature column: (x - mean) / scale."""

    mean: np.ndarray
    scale: np.ndarray

    def __post_init__(self):
        mean = np.asarray(self.mean, dtype=np.float64)
        scale = np.asarray(self.scale, dtype=np.float64)
        if mean.shape != scale.shape:
            raise ScalerConfigurationMissing(f"Scaler mean {mean.shape} and scale {scale.shape} differ in shape")
        if np.any(scale == 0):
            raise ScalerConfigurationMissing("Scaler scale contains zeros")
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "scale", scale)

    @property
    def n_features(self) -> int:
        return int(self.mean.shape[0]) if self.mean.ndim else 1

    def transform(self, values: np.ndarray) -> np.ndarray:
        return (np.asarray(values, dtype=np.float64) - self.mean) / self.scale

    def inverse_transform(self, values: np.ndarray) -> np.ndarray:
        return np.asarray(values, dtype=np.float64) * self.scale + self.mean

    @classmethod
    def from_json(cls, path: Path) -> "StandardScaler":
        """Reads {"mean": [...], "scale": [...]} as written by sklearn-style exporters."""
        path = Path(path)
        if not path.exists():
            raise ScalerConfigurationMissing(f"Scaler file not found: {path}")
        try:
            with path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
            return cls(mean=raw["mean"], scale=raw["scale"])
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            raise ScalerConfigurationMissing(f"Invalid scaler configuration at {path}: {exc}") from exc


class ModelRunner:
    """
    One forecasting model plus its scaling parameters.

    `window_shape` is (timesteps, features). The raw window is scaled column-wise
    before inference; the model output is mapped back to mmol/L with
    `output_mean` and `output_scale`.
    """

    def __init__(
        self,
        model_index: int,
        model: ForecastModel,
        input_scaler: StandardScaler,
        window_shape: tuple[int, int],
        output_mean: float = 0.0,
        output_scale: float = 1.0,
    ):
        if input_scaler.n_features != window_shape[1]:
            raise ScalerConfigurationMissing(
                f"Model {model_index}: scaler has {input_scaler.n_features} features, window expects {window_shape[1]}"
            )
        self.model_index = model_index
        self.model = model
        self.input_scaler = input_scaler
        self.window_shape = tuple(window_shape)
        self.output_mean = output_mean
        self.output_scale = output_scale

    def validate(self, window: np.ndarray) -> np.ndarray:
        array = np.asarray(window, dtype=np.float64)
        if array.shape != self.window_shape:
            raise MalformedFeatureWindow(
                f"Model {self.model_index} expects window {self.window_shape}, got {array.shape}"
            )
        if not np.all(np.isfinite(array)):
            raise MalformedFeatureWindow(f"Model {self.model_index} window contains non-finite values")
        return array

    def predict(self, window: np.ndarray) -> float:
        scaled = self.input_scaler.transform(self.validate(window))
        raw = float(self.model.infer(scaled))
        return raw * self.output_scale + self.output_mean


FEATURE_COLUMNS = ("glucose_mmol", "insulin_on_board", "carbs_on_board")


def build_feature_window(
    observations: Sequence[Observation],
    events: Sequence[DecayableEvent],
    timesteps: int,
) -> np.ndarray:
    """
    One row per reading for the newest `timesteps` observations, oldest first:
    glucose, then the decayed insulin and carbs still active at that reading.
    """
    ordered = sorted(observations, key=lambda o: o.timestamp)[-timesteps:]
    if len(ordered) < timesteps:
        raise MalformedFeatureWindow(f"Need {timesteps} readings for a feature window, have {len(ordered)}")

    rows = []
    for observation in ordered:
        ts = observation.timestamp
        # Events after the reading have not happened yet from its point of view.
        insulin = [e for e in events if e.kind == "insulin" and e.timestamp <= ts]
        carbs = [e for e in events if e.kind == "carbs" and e.timestamp <= ts]
        rows.append([observation.value, total_active(insulin, ts), total_active(carbs, ts)])
    return np.asarray(rows, dtype=np.float64)


def run_models(
    timestamp: datetime,
    current_value: float,
    window: np.ndarray,
    runners: Sequence[ModelRunner],
    prediction_count: int = 0,
    horizon_minutes: int = DEFAULT_HORIZON_MINUTES,
) -> list[Forecast]:
    """
    Runs every model on the same window. A model that rejects the window still
    yields a Forecast, with no predicted value, so the ensemble row keeps its slot.
    """
    forecasts = []
    for runner in runners:
        predicted: Optional[float] = None
        try:
            predicted = runner.predict(window)
        except MalformedFeatureWindow as exc:
            logger.warning(f"Skipping prediction for model {runner.model_index}: {exc}")
        forecasts.append(
            Forecast(
                timestamp=timestamp,
                current_value=current_value,
                model_index=runner.model_index,
                predicted_value=predicted,
                horizon_minutes=horizon_minutes,
                prediction_count=prediction_count,
            )
        )
    produced = sum(1 for f in forecasts if f.predicted_value is not None)
    logger.info(f"Ran {len(runners)} models at {timestamp.isoformat()}: {produced} predictions")
    return forecasts


__all__ = ["ForecastModel", "StandardScaler", "ModelRunner", "FEATURE_COLUMNS", "build_feature_window", "run_models"]
