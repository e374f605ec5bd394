from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


class NightscoutStatus(BaseModel):
    status: Optional[str] = None
    version: Optional[str] = None
    api_enabled: Optional[bool] = Field(default=None, alias="apiEnabled")


class NightscoutSGV(BaseModel):
    id: Optional[str] = Field(default=None, alias="_id")
    sgv: float
    direction: Optional[str] = None
    date: int
    delta: Optional[float] = None
    device: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("date", mode="before")
    def ensure_epoch_ms(cls, v: int | datetime) -> int:
        if isinstance(v, datetime):
            return _to_epoch_ms(v)
        return int(v)

    @property
    def timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.date / 1000.0, tz=timezone.utc)

    @property
    def external_id(self) -> str:
        # Entries without an _id are keyed by time and value so re-fetches de-duplicate.
        return self.id or f"{self.date}-{int(self.sgv)}"


class Treatment(BaseModel):
    id: Optional[str] = Field(default=None, alias="_id")
    eventType: Optional[str] = None
    created_at: Optional[datetime] = None
    enteredBy: Optional[str] = None
    insulin: Optional[float] = None
    carbs: Optional[float] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class ReconcileResult(BaseModel):
    forecasts: int
    newly_matched: int
    matched_total: int
    references_cleared: int = 0


class SyncResult(BaseModel):
    fetched: int
    stored: int


class SweepResult(BaseModel):
    observations_removed: int
    forecasts_removed: int


class ForecastIn(BaseModel):
    id: Optional[str] = None
    timestamp: datetime
    current_value: float = Field(gt=0, description="mmol/L at prediction time")
    model_index: int = Field(ge=1)
    predicted_value: Optional[float] = None
    horizon_minutes: int = Field(default=20, gt=0)
    prediction_count: int = Field(default=0, ge=0)


class WorkoutIn(BaseModel):
    prediction_timestamp: datetime
    workout_type: Optional[str] = None
    last_workout_end: Optional[datetime] = None
    minutes_since_workout: Optional[float] = Field(default=None, ge=0)
    active_kilocalories: Optional[float] = Field(default=None, ge=0)
    duration_minutes: Optional[float] = Field(default=None, ge=0)


class IngestResult(BaseModel):
    received: int
    added: int
