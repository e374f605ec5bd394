from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import Response

from nsforecast.api.deps import get_coordinator
from nsforecast.core.errors import TransientFetchFailure
from nsforecast.models.domain import Forecast, WorkoutSnapshot
from nsforecast.models.schemas import (
    ForecastIn,
    IngestResult,
    ReconcileResult,
    SweepResult,
    SyncResult,
    WorkoutIn,
)
from nsforecast.services.coordinator import ReconciliationCoordinator

router = APIRouter()


def _to_forecast(payload: ForecastIn) -> Forecast:
    fields = payload.model_dump(exclude_none=True, exclude={"predicted_value"})
    forecast = Forecast(**fields)
    forecast.set_prediction(payload.predicted_value)
    return forecast


@router.post("", response_model=IngestResult, summary="Store per-model forecasts")
async def ingest_forecasts(
    payload: list[ForecastIn] = Body(...),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
) -> IngestResult:
    added = await coordinator.ingest_forecasts(_to_forecast(item) for item in payload)
    return IngestResult(received=len(payload), added=added)


@router.post("/workouts", response_model=IngestResult, summary="Store workout snapshots taken at prediction time")
async def ingest_workouts(
    payload: list[WorkoutIn] = Body(...),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
) -> IngestResult:
    added = await coordinator.ingest_workouts(WorkoutSnapshot(**item.model_dump()) for item in payload)
    return IngestResult(received=len(payload), added=added)


@router.post("/sync", response_model=SyncResult, summary="Pull recent observations into the reading store")
async def sync_observations(
    hours_back: Optional[float] = Query(default=None, gt=0, le=24 * 30),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
) -> SyncResult:
    try:
        return await coordinator.sync_observations(hours_back=hours_back)
    except TransientFetchFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.post("/reconcile", response_model=ReconcileResult, summary="Match stored forecasts to observations")
async def reconcile(coordinator: ReconciliationCoordinator = Depends(get_coordinator)) -> ReconcileResult:
    try:
        return await coordinator.reconcile_stored()
    except TransientFetchFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.post("/sweep", response_model=SweepResult, summary="Apply the retention horizon")
async def sweep(coordinator: ReconciliationCoordinator = Depends(get_coordinator)) -> SweepResult:
    return await coordinator.sweep()


@router.get("/export.csv", summary="Download the reconciled forecasts as CSV")
async def export_csv(coordinator: ReconciliationCoordinator = Depends(get_coordinator)) -> Response:
    content = coordinator.export_stored()
    filename = coordinator.settings.export.filename
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
