"""Main API router combining all v1 route modules.

Aggregates all routers under the ``/api/v1`` prefix so the
FastAPI application only needs to include a single router.

Includes:
    * Admin: scraper scheduler control (status, start, stop, trigger)
"""

from __future__ import annotations

from fastapi import APIRouter

from ecohub.api.v1 import scheduler

api_router = APIRouter(prefix="/api/v1")

# -- Admin sub-routers -----------------------------------------------------
api_router.include_router(scheduler.router)
