"""Admin scraper API endpoints for EcoHub v1.

Controls and monitors the automated ingestion scheduler.

Endpoints
---------
- ``GET  /api/v1/admin/scraper/status``  -- Scheduler state and last run report.
- ``POST /api/v1/admin/scraper/start``   -- Enable periodic ingestion.
- ``POST /api/v1/admin/scraper/stop``    -- Disable periodic ingestion.
- ``POST /api/v1/admin/scraper/trigger`` -- Run one ingestion now.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Body, HTTPException, Request
from pydantic import BaseModel

from ecohub.models.ingestion import IngestionQuery
from ecohub.services.ingestion.errors import AlreadyRunningError
from ecohub.services.ingestion.scheduler import LAST_RESULT_CACHE_KEY, IngestionScheduler

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin/scraper", tags=["admin", "ingestion"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class SchedulerStatusResponse(BaseModel):
    running: bool
    enabled: bool
    last_run: str | None = None
    next_run: str | None = None
    interval: int
    config: dict[str, Any]
    consecutive_failures: int = 0
    last_attempts: int = 0
    last_result: dict[str, Any] | None = None


class SchedulerActionResponse(BaseModel):
    message: str
    status: SchedulerStatusResponse


class TriggerResponse(BaseModel):
    message: str
    imported: dict[str, Any]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_scheduler(request: Request) -> IngestionScheduler:
    """Retrieve the scheduler from app state, or raise 503."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Ingestion scheduler not initialised.")
    return scheduler


async def _status(request: Request, scheduler: IngestionScheduler) -> SchedulerStatusResponse:
    snapshot = scheduler.status()
    # After a restart the last report only survives in the cache.
    if snapshot["last_result"] is None:
        cache = getattr(request.app.state, "cache", None)
        if cache is not None:
            snapshot["last_result"] = await cache.get(LAST_RESULT_CACHE_KEY)
    return SchedulerStatusResponse(**snapshot)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/status", response_model=SchedulerStatusResponse)
async def get_scheduler_status(request: Request) -> SchedulerStatusResponse:
    """Current scheduler state.  Answers immediately even during a run."""
    return await _status(request, _get_scheduler(request))


@router.post("/start", response_model=SchedulerActionResponse)
async def start_scheduler(request: Request) -> SchedulerActionResponse:
    scheduler = _get_scheduler(request)
    await scheduler.start()
    logger.info("api.admin.scraper.started")
    return SchedulerActionResponse(
        message="Scraper scheduler started",
        status=await _status(request, scheduler),
    )


@router.post("/stop", response_model=SchedulerActionResponse)
async def stop_scheduler(request: Request) -> SchedulerActionResponse:
    """Disable the schedule.  A run in flight is allowed to finish."""
    scheduler = _get_scheduler(request)
    await scheduler.stop()
    logger.info("api.admin.scraper.stopped")
    return SchedulerActionResponse(
        message="Scraper scheduler stopped",
        status=await _status(request, scheduler),
    )


@router.post("/trigger", response_model=TriggerResponse)
async def trigger_ingestion(
    request: Request,
    query: IngestionQuery | None = Body(default=None),
) -> TriggerResponse:
    """Run one ingestion now and return its report.

    Responds ``409`` when a scheduled or manual run is already in flight.
    """
    scheduler = _get_scheduler(request)

    logger.info("api.admin.scraper.trigger", query=query.describe() if query else None)

    try:
        result = await scheduler.trigger(query)
    except AlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    return TriggerResponse(
        message=(
            f"Imported {result.startups} startups, {result.opportunities} opportunities "
            f"and {result.events} events in {result.duration_seconds:.1f}s."
        ),
        imported=result.to_dict(),
    )
