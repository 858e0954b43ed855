"""Uniform capability boundary around one external data source.

Every source client exposes the same contract::

    await client.fetch(query) -> RawBatch | SourceError

The base class wraps the provider-specific :meth:`SourceClient._fetch` in a
per-source timeout and translates every failure into a
:class:`SourceError`.  Nothing raised by a provider's transport ever leaves
``fetch``; a timeout cancels only this source's request.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod

import httpx
import structlog

from ecohub.models.enums import SourceErrorKind, SourceType
from ecohub.models.ingestion import IngestionQuery, RawBatch
from ecohub.services.ingestion.errors import SourceError

logger = structlog.get_logger(__name__)

DEFAULT_SOURCE_TIMEOUT = 20.0  # seconds


def classify_exception(exc: BaseException) -> tuple[SourceErrorKind, str]:
    """Map a provider/transport exception onto a :class:`SourceErrorKind`."""
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return SourceErrorKind.TIMEOUT, "request timed out"

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return SourceErrorKind.RATE_LIMITED, "rate limited (HTTP 429)"
        return SourceErrorKind.UNAVAILABLE, f"HTTP {status}"

    if isinstance(exc, httpx.TransportError):
        return SourceErrorKind.UNAVAILABLE, f"transport error: {type(exc).__name__}"

    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return SourceErrorKind.INVALID_RESPONSE, str(exc) or type(exc).__name__

    return SourceErrorKind.UNAVAILABLE, str(exc) or type(exc).__name__


class SourceClient(ABC):
    """Base class for all source clients.

    Parameters
    ----------
    source_id:
        Stable identifier used in error strings, logs and entity ``source``
        defaults.
    timeout:
        Upper bound, in seconds, on one :meth:`fetch` call.
    """

    source_type: SourceType = SourceType.SEARCH_RESULTS

    def __init__(self, source_id: str, *, timeout: float = DEFAULT_SOURCE_TIMEOUT) -> None:
        self.source_id = source_id
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        return self._timeout

    async def fetch(self, query: IngestionQuery) -> RawBatch | SourceError:
        """Fetch one batch for *query*, or describe why it could not be fetched."""
        start = time.monotonic()
        try:
            batch = await asyncio.wait_for(self._fetch(query), timeout=self._timeout)
        except SourceError as exc:
            error = exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            kind, message = classify_exception(exc)
            error = SourceError(self.source_id, kind, message)
        else:
            logger.info(
                "ingestion.source_fetched",
                source=self.source_id,
                records=batch.size,
                has_text=batch.text is not None,
                duration_s=round(time.monotonic() - start, 2),
            )
            return batch

        logger.warning(
            "ingestion.source_failed",
            source=self.source_id,
            kind=error.kind.value,
            error=error.message,
            duration_s=round(time.monotonic() - start, 2),
        )
        return error

    def _error(self, kind: SourceErrorKind, message: str) -> SourceError:
        return SourceError(self.source_id, kind, message)

    @abstractmethod
    async def _fetch(self, query: IngestionQuery) -> RawBatch:
        """Provider-specific fetch.  May raise anything; ``fetch`` maps it."""

    async def close(self) -> None:
        """Release provider resources.  No-op by default."""
