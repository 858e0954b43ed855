"""EcoHub ingestion service entry point.

Creates the FastAPI app, includes the admin routers and manages the
lifecycle of the ingestion stack (cache, source clients, entity store,
pipeline and scheduler).
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from config.settings import Settings, settings
from ecohub.api.router import api_router
from ecohub.models.ingestion import IngestionQuery
from ecohub.services.cache import CacheManager
from ecohub.services.ingestion import (
    CacheEntityStore,
    ChatCompletionSourceClient,
    CuratedSourceClient,
    IngestionPipeline,
    IngestionScheduler,
    ScheduleConfig,
    SourceClient,
    WebSearchSourceClient,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(settings.log_level),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Component factories
# ---------------------------------------------------------------------------


def build_sources(config: Settings) -> list[SourceClient]:
    """Source clients in priority order: Perplexity, OpenAI, web search, curated data."""
    timeout = config.source_timeout_seconds
    sources: list[SourceClient] = [
        ChatCompletionSourceClient(
            "perplexity",
            base_url=config.perplexity_base_url,
            api_key=config.perplexity_api_key,
            model=config.perplexity_model,
            timeout=timeout,
        ),
        ChatCompletionSourceClient(
            "openai",
            base_url=config.openai_base_url,
            api_key=config.openai_api_key,
            model=config.openai_model,
            timeout=timeout,
        ),
    ]
    if config.websearch_enabled:
        sources.append(
            WebSearchSourceClient(
                base_url=config.websearch_base_url,
                max_pages=config.websearch_max_pages,
                timeout=timeout,
            )
        )
    sources.append(CuratedSourceClient(path=config.curated_data_path, timeout=timeout))
    return sources


def build_schedule_config(config: Settings) -> ScheduleConfig:
    return ScheduleConfig(
        enabled=config.auto_ingestion_enabled,
        interval_ms=config.scrape_interval_ms,
        max_retries=config.max_retries,
        retry_delay_ms=config.retry_delay_ms,
    )


def build_default_query(config: Settings) -> IngestionQuery:
    return IngestionQuery(
        sector=config.default_sector,
        geography=config.default_geography,
        keywords=list(config.default_keywords),
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of the ingestion stack.

    On startup:
      1. Initialise cache manager
      2. Build source clients from settings
      3. Build entity store and ingestion pipeline
      4. Build the scheduler and start it when auto-ingestion is enabled
      5. Store everything on ``app.state``

    On shutdown:
      - Stop the scheduler and let an in-flight run drain.
      - Close all HTTP clients and the cache.
    """
    _configure_logging()
    logger.info("app.startup", env=settings.env)

    app.state.start_time = time.time()

    # -- 1. Cache -----------------------------------------------------------
    cache = CacheManager(
        redis_url=settings.redis_url if settings.redis_url else None,
        namespace="ecohub:",
    )
    app.state.cache = cache
    logger.info("app.cache_initialised")

    # -- 2. Sources ---------------------------------------------------------
    sources = build_sources(settings)
    app.state.sources = sources
    logger.info("app.sources_initialised", sources=[s.source_id for s in sources])

    # -- 3. Store + pipeline ------------------------------------------------
    pipeline = IngestionPipeline(
        sources,
        CacheEntityStore(cache),
        max_concurrency=settings.max_concurrent_sources,
        confidence_threshold=settings.confidence_threshold,
    )
    app.state.ingestion_pipeline = pipeline
    logger.info("app.ingestion_pipeline_initialised")

    # -- 4. Scheduler -------------------------------------------------------
    schedule = build_schedule_config(settings)
    scheduler = IngestionScheduler(
        pipeline,
        schedule,
        cache=cache,
        default_query=build_default_query(settings),
        result_ttl_seconds=settings.result_cache_ttl,
    )
    app.state.scheduler = scheduler

    if schedule.enabled:
        await scheduler.start()
        logger.info("app.ingestion_scheduler_started", interval_ms=schedule.interval_ms)
    else:
        logger.info("app.ingestion_scheduler_disabled")

    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_start")

    await scheduler.aclose()

    for source in sources:
        await source.close()
    await cache.close()

    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="EcoHub Ingestion API",
    description=(
        "Automated ingestion of startups, funding opportunities and events "
        "for the EcoHub startup ecosystem platform."
    ),
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

# -- Include routers -------------------------------------------------------
app.include_router(api_router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    """API information endpoint."""
    return {
        "name": "EcoHub Ingestion API",
        "version": "0.1.0",
        "docs": "/docs",
        "scraper_status": "/api/v1/admin/scraper/status",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ecohub.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=not settings.is_production,
    )
