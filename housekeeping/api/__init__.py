"""API endpoints module."""

from fastapi import APIRouter

from housekeeping.api.housekeeping import router as housekeeping_router

api_router = APIRouter(prefix="/api")

api_router.include_router(housekeeping_router)

__all__ = ["api_router"]
