from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response

from nsforecast import __version__
from nsforecast.api.deps import get_coordinator
from nsforecast.services.coordinator import ReconciliationCoordinator

router = APIRouter()

_start_time = datetime.now(timezone.utc)


def _uptime_seconds() -> float:
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


@router.api_route("/", methods=["GET", "HEAD"], summary="Liveness probe", response_model=None)
async def health(request: Request):
    if request.method == "HEAD":
        return Response(status_code=200)
    return {"ok": True}


@router.get("/full", summary="Store counts, uptime and database health")
async def full_health(request: Request, coordinator: ReconciliationCoordinator = Depends(get_coordinator)) -> dict:
    forecasts = coordinator.forecast_store.load_forecasts()
    status: dict[str, object] = {
        "ok": True,
        "uptime_seconds": _uptime_seconds(),
        "version": __version__,
        "observations": await coordinator.reading_store.count(),
        "forecasts": len(forecasts),
        "matched": sum(1 for f in forecasts if f.is_matched),
    }

    database = getattr(request.app.state, "database", None)
    if database is not None:
        status["database"] = await database.check_health()
        status["ok"] = bool(status["database"]["ok"])
    else:
        status["database"] = {"ok": False, "reason": "Not configured (in-memory store)"}
    return status
