"""Automated ecosystem ingestion for EcoHub.

Pulls candidate startups, funding opportunities and events from several
external sources, normalizes them into typed entities, filters them by
confidence, deduplicates them and stores the new ones.

Sources (in priority order):
  - Perplexity search (chat completions)
  - OpenAI (chat completions)
  - Keyless web search (DuckDuckGo HTML + page scraping)
  - Bundled curated dataset -- offline fallback

Public API::

    from ecohub.services.ingestion import (
        ChatCompletionSourceClient,
        CuratedSourceClient,
        IngestionPipeline,
        IngestionScheduler,
    )
"""

from __future__ import annotations

from ecohub.services.ingestion.chat_client import ChatCompletionSourceClient
from ecohub.services.ingestion.curated_client import CuratedSourceClient
from ecohub.services.ingestion.errors import (
    AlreadyRunningError,
    IngestionError,
    PersistenceError,
    SourceError,
)
from ecohub.services.ingestion.pipeline import ImportResult, IngestionPipeline
from ecohub.services.ingestion.schedule_state import ScheduleConfig, ScheduleState
from ecohub.services.ingestion.scheduler import IngestionScheduler
from ecohub.services.ingestion.sources import SourceClient
from ecohub.services.ingestion.store import CacheEntityStore, EntityStore
from ecohub.services.ingestion.websearch_client import WebSearchSourceClient

__all__ = [
    "AlreadyRunningError",
    "CacheEntityStore",
    "ChatCompletionSourceClient",
    "CuratedSourceClient",
    "EntityStore",
    "ImportResult",
    "IngestionError",
    "IngestionPipeline",
    "IngestionScheduler",
    "PersistenceError",
    "ScheduleConfig",
    "ScheduleState",
    "SourceClient",
    "SourceError",
    "WebSearchSourceClient",
]
