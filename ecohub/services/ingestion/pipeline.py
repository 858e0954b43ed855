"""Ecosystem ingestion pipeline: one run from sources to stored entities.

Steps of :meth:`IngestionPipeline.run`
--------------------------------------
1. **Fan out** -- every configured source is fetched concurrently, with
   at most ``max_concurrency`` requests in flight.  Results are consumed
   in the configured source order regardless of completion order.
2. **Normalize** -- each successful batch is mapped onto typed
   candidates; unmappable records are counted, not reported.
3. **Merge** -- candidates below the confidence threshold are dropped,
   then cross-source duplicates are collapsed (higher confidence wins,
   ties keep the earlier source).
4. **Store** -- entities already present in the store are skipped; the
   rest are saved one by one.  A failed save is recorded and the run
   continues.

Failure model
-------------
A failed source contributes exactly one entry to ``ImportResult.errors``
and zero candidates.  ``run`` itself never raises for source or
persistence failures; whether a run should be retried is decided by the
caller from :attr:`ImportResult.is_retryable_failure`.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from ecohub.models.enums import SourceErrorKind
from ecohub.models.ingestion import IngestionQuery, RawBatch
from ecohub.services.ingestion.errors import PersistenceError, SourceError
from ecohub.services.ingestion.merger import count_by_kind, merge
from ecohub.services.ingestion.normalizer import normalize

if TYPE_CHECKING:
    from ecohub.models.entities import CandidateEntity
    from ecohub.services.ingestion.sources import SourceClient
    from ecohub.services.ingestion.store import EntityStore

logger = structlog.get_logger(__name__)

DEFAULT_MAX_CONCURRENCY = 3
DEFAULT_CONFIDENCE_THRESHOLD = 0.5


# ---------------------------------------------------------------------------
# ImportResult
# ---------------------------------------------------------------------------


@dataclass
class ImportResult:
    """Report produced by one ingestion run.

    ``startups``, ``opportunities`` and ``events`` count only entities
    that passed the confidence threshold, deduplication and the
    existing-record check, and were saved successfully.  The remaining
    counters explain where the other candidates went.
    """

    startups: int = 0
    opportunities: int = 0
    events: int = 0
    errors: list[str] = field(default_factory=list)
    raw_candidates: int = 0
    normalization_dropped: int = 0
    below_threshold: int = 0
    duplicates: int = 0
    already_present: int = 0
    sources_used: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total(self) -> int:
        return self.startups + self.opportunities + self.events

    @property
    def is_retryable_failure(self) -> bool:
        """True when the run yielded nothing and something went wrong.

        Entities found already stored count as yield.
        """
        return self.total + self.already_present == 0 and bool(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startups": self.startups,
            "opportunities": self.opportunities,
            "events": self.events,
            "total": self.total,
            "errors": list(self.errors),
            "raw_candidates": self.raw_candidates,
            "normalization_dropped": self.normalization_dropped,
            "below_threshold": self.below_threshold,
            "duplicates": self.duplicates,
            "already_present": self.already_present,
            "sources_used": list(self.sources_used),
            "duration_seconds": round(self.duration_seconds, 2),
            "timestamp": self.timestamp.isoformat(),
        }


def _import_error(entity: CandidateEntity, message: str) -> str:
    return f"{entity.kind.capitalize()} import failed: {entity.display_name} - {message}"


# ---------------------------------------------------------------------------
# IngestionPipeline
# ---------------------------------------------------------------------------


class IngestionPipeline:
    """Runs one ingestion over an ordered list of sources.

    Parameters
    ----------
    sources:
        Source clients in priority order.  This order decides which
        candidate survives a confidence tie.
    store:
        Entity store.  Without one, surviving entities are only counted.
    max_concurrency:
        Maximum number of source fetches in flight at once.
    confidence_threshold:
        Minimum confidence (inclusive) for a candidate to be imported.
    """

    def __init__(
        self,
        sources: Sequence[SourceClient],
        store: EntityStore | None = None,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if not 0.0 <= confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be within [0, 1]")

        self._sources = list(sources)
        self._store = store
        self._max_concurrency = max_concurrency
        self._threshold = confidence_threshold
        self._last_result: ImportResult | None = None

    @property
    def sources(self) -> list[SourceClient]:
        return list(self._sources)

    @property
    def last_result(self) -> ImportResult | None:
        """The result of the most recent run."""
        return self._last_result

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, query: IngestionQuery) -> ImportResult:
        """Run one ingestion for *query* and return its report."""
        start = time.monotonic()
        result = ImportResult()

        logger.info(
            "ingestion.run_start",
            query=query.describe(),
            sources=[s.source_id for s in self._sources],
        )

        # -- Step 1: Fetch from every source -------------------------------
        outcomes = await self._fetch_all(query)

        # -- Step 2: Normalize in source order -----------------------------
        candidates: list[CandidateEntity] = []
        for outcome in outcomes:
            if isinstance(outcome, SourceError):
                result.errors.append(str(outcome))
                continue
            result.sources_used.append(outcome.source_id)
            normalized = normalize(outcome)
            candidates.extend(normalized.entities)
            result.normalization_dropped += normalized.dropped

        result.raw_candidates = len(candidates)

        # -- Step 3: Threshold + dedup --------------------------------------
        merged = merge(candidates, self._threshold)
        result.below_threshold = merged.below_threshold
        result.duplicates = merged.duplicates

        logger.info(
            "ingestion.merged",
            candidates=result.raw_candidates,
            kept=len(merged.entities),
            below_threshold=merged.below_threshold,
            duplicates=merged.duplicates,
        )

        # -- Step 4: Persist -----------------------------------------------
        imported = await self._persist(merged.entities, result)
        result.startups, result.opportunities, result.events = count_by_kind(imported)

        result.duration_seconds = time.monotonic() - start
        self._last_result = result

        logger.info(
            "ingestion.run_complete",
            startups=result.startups,
            opportunities=result.opportunities,
            events=result.events,
            already_present=result.already_present,
            errors=len(result.errors),
            duration_s=round(result.duration_seconds, 2),
        )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _fetch_all(self, query: IngestionQuery) -> list[RawBatch | SourceError]:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(source: SourceClient) -> RawBatch | SourceError:
            async with semaphore:
                return await source.fetch(query)

        outcomes = await asyncio.gather(
            *(_bounded(source) for source in self._sources),
            return_exceptions=True,
        )

        settled: list[RawBatch | SourceError] = []
        for source, outcome in zip(self._sources, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, SourceError | RawBatch):
                settled.append(outcome)
                continue
            # A client broke its contract and raised; treat it as unavailable.
            logger.error(
                "ingestion.source_raised",
                source=source.source_id,
                error=str(outcome),
                exc_info=outcome,
            )
            settled.append(
                SourceError(source.source_id, SourceErrorKind.UNAVAILABLE, str(outcome) or type(outcome).__name__)
            )
        return settled

    async def _persist(self, entities: list[CandidateEntity], result: ImportResult) -> list[CandidateEntity]:
        if self._store is None:
            return list(entities)

        imported: list[CandidateEntity] = []
        for entity in entities:
            try:
                if await self._store.exists(entity):
                    result.already_present += 1
                    continue
                await self._store.save(entity)
            except PersistenceError as exc:
                result.errors.append(_import_error(entity, str(exc)))
                logger.warning(
                    "ingestion.entity_save_failed",
                    kind=entity.kind,
                    name=entity.display_name,
                    error=str(exc),
                )
                continue
            imported.append(entity)
        return imported
