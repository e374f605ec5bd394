from fastapi import HTTPException, Request

from nsforecast.services.coordinator import ReconciliationCoordinator


def get_coordinator(request: Request) -> ReconciliationCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Coordinator not initialized")
    return coordinator
