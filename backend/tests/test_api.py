import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import at, obs
from nsforecast.api.deps import get_coordinator
from nsforecast.core.errors import TransientFetchFailure
from nsforecast.core.settings import Settings
from nsforecast.main import app, build_coordinator
from nsforecast.models.schemas import SyncResult
from nsforecast.services.reading_store import InMemoryReadingStore, StoreObservationSource

client = TestClient(app)


@pytest.fixture
def coordinator(tmp_path):
    settings = Settings.model_validate({"data": {"data_dir": str(tmp_path)}, "export": {"model_indices": [1, 2]}})
    return asyncio.run(build_coordinator(settings))


@pytest.fixture
def api(coordinator):
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    try:
        yield client
    finally:
        app.dependency_overrides = {}


def test_health_ok():
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_endpoints_unavailable_before_startup():
    response = client.post("/api/predictions/reconcile")
    assert response.status_code == 503


def test_build_coordinator_defaults_to_local_store(coordinator):
    assert isinstance(coordinator.reading_store, InMemoryReadingStore)
    assert isinstance(coordinator.source, StoreObservationSource)


def test_full_health_reports_counts(api, coordinator, make_forecast):
    coordinator.forecast_store.save_forecasts([make_forecast(0)])
    body = api.get("/api/health/full").json()
    assert body["ok"] is True
    assert body["forecasts"] == 1
    assert body["observations"] == 0
    assert "uptime_seconds" in body


def test_reconcile_then_export(api, coordinator, make_forecast):
    coordinator.forecast_store.save_forecasts([make_forecast(0, model_index=1), make_forecast(0, model_index=2)])
    coordinator.reading_store = InMemoryReadingStore([obs(19, 7.0), obs(26, 7.5)])
    coordinator.clock = lambda: at(60)
    coordinator.reconciler.clock = lambda: at(60)

    response = api.post("/api/predictions/reconcile")
    assert response.status_code == 200
    assert response.json()["newly_matched"] == 2

    export = api.get("/api/predictions/export.csv")
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert 'filename="predictions.csv"' in export.headers["content-disposition"]
    lines = export.text.split("\r\n")
    assert lines[0].startswith("Timestamp,Prediction_Count,M1_Current_BG_mmol")
    assert ",7.00,126," in lines[1]


def test_reconcile_maps_transient_failure_to_503(api, coordinator, mocker):
    mocker.patch.object(
        coordinator, "reconcile_stored", new=AsyncMock(side_effect=TransientFetchFailure("offline"))
    )
    response = api.post("/api/predictions/reconcile")
    assert response.status_code == 503
    assert "offline" in response.json()["detail"]


def test_sync_passes_lookback(api, coordinator, mocker):
    sync = mocker.patch.object(
        coordinator, "sync_observations", new=AsyncMock(return_value=SyncResult(fetched=3, stored=2))
    )
    response = api.post("/api/predictions/sync", params={"hours_back": 6})
    assert response.status_code == 200
    assert response.json() == {"fetched": 3, "stored": 2}
    sync.assert_awaited_once_with(hours_back=6.0)


def test_ingest_forecasts_then_reconcile(api, coordinator):
    coordinator.reading_store = InMemoryReadingStore([obs(20, 7.0)])
    coordinator.clock = lambda: at(60)
    payload = [
        {"id": "f1", "timestamp": at(0).isoformat(), "current_value": 5.5, "model_index": 1, "predicted_value": 6.1},
        {"timestamp": at(0).isoformat(), "current_value": 5.5, "model_index": 2},
    ]

    response = api.post("/api/predictions", json=payload)
    assert response.status_code == 200
    assert response.json() == {"received": 2, "added": 2}

    again = api.post("/api/predictions", json=payload[:1])
    assert again.json() == {"received": 1, "added": 0}

    stored = {f.model_index: f for f in coordinator.forecast_store.load_forecasts()}
    assert stored[1].id == "f1"
    assert stored[1].predicted_value == 6.1
    assert stored[2].predicted_value is None

    assert api.post("/api/predictions/reconcile").json()["newly_matched"] == 2


def test_ingest_forecasts_rejects_invalid_payload(api):
    response = api.post("/api/predictions", json=[{"timestamp": at(0).isoformat(), "current_value": 5.5, "model_index": 0}])
    assert response.status_code == 422


def test_ingest_workouts(api, coordinator):
    payload = [{"prediction_timestamp": at(0).isoformat(), "workout_type": "Cycling", "duration_minutes": 45}]
    response = api.post("/api/predictions/workouts", json=payload)
    assert response.status_code == 200
    assert response.json() == {"received": 1, "added": 1}
    assert coordinator.forecast_store.load_workouts()[0].workout_type == "Cycling"


def test_full_health_includes_database_check(api):
    database = MagicMock()
    database.check_health = AsyncMock(return_value={"ok": False, "error": "connection refused"})
    app.state.database = database
    try:
        body = api.get("/api/health/full").json()
    finally:
        app.state.database = None

    assert body["database"] == {"ok": False, "error": "connection refused"}
    assert body["ok"] is False
    database.check_health.assert_awaited_once()
