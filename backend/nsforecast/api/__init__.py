from fastapi import APIRouter

from .health import router as health_router
from .predictions import router as predictions_router

api_router = APIRouter()
api_router.include_router(health_router, prefix="/health", tags=["health"])
api_router.include_router(predictions_router, prefix="/predictions", tags=["predictions"])

__all__ = ["api_router"]
