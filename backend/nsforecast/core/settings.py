import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, ValidationError, field_validator, model_validator


class NightscoutConfig(BaseModel):
    base_url: Optional[HttpUrl] = None
    api_secret: Optional[str] = Field(default=None)
    token: Optional[str] = Field(default=None)
    timeout_seconds: int = Field(default=10, ge=1)
    max_entries: int = Field(default=2016, ge=1, description="SGV entries per page of a range query")


class DatabaseConfig(BaseModel):
    url: Optional[str] = Field(default=None, description="SQLAlchemy async URL; in-memory store when unset")


class DataConfig(BaseModel):
    data_dir: Path = Field(default=Path("backend/data"))

    @field_validator("data_dir", mode="before")
    def _expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser()


class MatchingConfig(BaseModel):
    horizon_minutes: float = Field(default=20.0, gt=0)
    tolerance_minutes: float = Field(default=5.0, gt=0)
    acceptance_min_minutes: float = Field(default=15.0, ge=0)
    acceptance_max_minutes: float = Field(default=25.0, gt=0)
    buffer_hours: float = Field(default=24.0, ge=0)

    @model_validator(mode="after")
    def _check_window(self) -> "MatchingConfig":
        if self.acceptance_min_minutes > self.acceptance_max_minutes:
            raise ValueError("acceptance_min_minutes must not exceed acceptance_max_minutes")
        return self


class DecayConfig(BaseModel):
    insulin_window_hours: float = Field(default=4.0, gt=0)
    carb_window_hours: float = Field(default=5.0, gt=0)
    epsilon: float = Field(default=0.01, gt=0, lt=1)


class ExportConfig(BaseModel):
    utc_offset_minutes: int = Field(default=0, ge=-14 * 60, le=14 * 60)
    model_indices: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5, 6])
    include_prediction_count: bool = True
    workout_tolerance_seconds: float = Field(default=30.0, ge=0)
    filename: str = "predictions.csv"


class RetentionConfig(BaseModel):
    days: int = Field(default=30, ge=1)


class SchedulerConfig(BaseModel):
    enabled: bool = False
    interval_minutes: int = Field(default=15, ge=1)
    sync_hours_back: float = Field(default=24.0, gt=0)


class Settings(BaseModel):
    nightscout: NightscoutConfig = Field(default_factory=NightscoutConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    decay: DecayConfig = Field(default_factory=DecayConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    model_config = ConfigDict(arbitrary_types_allowed=True)


DEFAULT_CONFIG_PATH = Path(os.environ.get("CONFIG_PATH", "config/config.json"))

SECTIONS = ("nightscout", "database", "data", "matching", "decay", "export", "retention", "scheduler")


def _load_file_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Invalid JSON configuration at {path}") from exc


def _load_env() -> dict[str, Any]:
    env_config: dict[str, Any] = {}

    base_url = os.environ.get("NIGHTSCOUT_BASE_URL") or os.environ.get("NIGHTSCOUT_URL")
    if base_url:
        env_config.setdefault("nightscout", {})["base_url"] = base_url

    api_secret = os.environ.get("NIGHTSCOUT_API_SECRET")
    if api_secret:
        env_config.setdefault("nightscout", {})["api_secret"] = api_secret

    token = os.environ.get("NIGHTSCOUT_TOKEN")
    if token:
        env_config.setdefault("nightscout", {})["token"] = token

    timeout = os.environ.get("NIGHTSCOUT_TIMEOUT_SECONDS")
    if timeout:
        env_config.setdefault("nightscout", {})["timeout_seconds"] = int(timeout)

    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        env_config.setdefault("database", {})["url"] = database_url

    data_dir = os.environ.get("DATA_DIR")
    if data_dir:
        env_config.setdefault("data", {})["data_dir"] = data_dir

    offset = os.environ.get("EXPORT_UTC_OFFSET_MINUTES")
    if offset:
        env_config.setdefault("export", {})["utc_offset_minutes"] = int(offset)

    models = os.environ.get("EXPORT_MODEL_INDICES")
    if models:
        env_config.setdefault("export", {})["model_indices"] = [
            int(idx.strip()) for idx in models.split(",") if idx.strip()
        ]

    retention = os.environ.get("RETENTION_DAYS")
    if retention:
        env_config.setdefault("retention", {})["days"] = int(retention)

    scheduler_enabled = os.environ.get("ENABLE_SCHEDULER")
    if scheduler_enabled:
        env_config.setdefault("scheduler", {})["enabled"] = scheduler_enabled.lower() == "true"

    interval = os.environ.get("SYNC_INTERVAL_MINUTES")
    if interval:
        env_config.setdefault("scheduler", {})["interval_minutes"] = int(interval)

    return env_config


def merge_settings(env_config: dict[str, Any], file_config: dict[str, Any]) -> dict[str, Any]:
    return {
        section: {**file_config.get(section, {}), **env_config.get(section, {})}
        for section in SECTIONS
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    env_config = _load_env()
    file_config = _load_file_config(DEFAULT_CONFIG_PATH)
    merged = merge_settings(env_config=env_config, file_config=file_config)
    try:
        return Settings.model_validate(merged)
    except ValidationError as exc:  # pragma: no cover
        raise RuntimeError(f"Configuration error: {exc}") from exc


__all__ = ["Settings", "MatchingConfig", "DecayConfig", "ExportConfig", "get_settings", "merge_settings"]
