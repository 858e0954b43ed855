"""Source client over the bundled, curated ecosystem dataset.

The dataset is a sectioned JSON document (``startups``, ``opportunities``,
``events``) shipped with the package.  It keeps ingestion useful when no
provider key is configured and goes through the same source contract as
the live providers.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import structlog

from ecohub.models.enums import SourceErrorKind, SourceType
from ecohub.models.ingestion import IngestionQuery, RawBatch
from ecohub.services.ingestion.sources import DEFAULT_SOURCE_TIMEOUT, SourceClient

logger = structlog.get_logger(__name__)

_BUNDLED_PATH: Path = Path(__file__).resolve().parents[2] / "data" / "curated_ecosystem.json"

_SECTIONS = ("startups", "opportunities", "events")
_MATCH_FIELDS = ("sector", "location", "name", "title", "description")


def _matches(record: Any, term: str | None) -> bool:
    if not term:
        return True
    if not isinstance(record, dict):
        # Malformed records are passed through for the normalizer to count.
        return True
    needle = term.lower()
    return any(needle in str(record.get(f) or "").lower() for f in _MATCH_FIELDS)


class CuratedSourceClient(SourceClient):
    """Serve curated records filtered by the query's sector and geography.

    Parameters
    ----------
    path:
        JSON file to read.  Defaults to the bundled dataset.
    """

    source_type = SourceType.SECTIONED

    def __init__(
        self,
        source_id: str = "curated",
        *,
        path: str | Path | None = None,
        timeout: float = DEFAULT_SOURCE_TIMEOUT,
    ) -> None:
        super().__init__(source_id, timeout=timeout)
        self._path = Path(path) if path else _BUNDLED_PATH

    def _load(self) -> dict[str, Any]:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as exc:
            raise self._error(SourceErrorKind.UNAVAILABLE, f"dataset not found: {self._path.name}") from exc
        except (json.JSONDecodeError, OSError) as exc:
            raise self._error(SourceErrorKind.INVALID_RESPONSE, f"dataset unreadable: {exc}") from exc

        if not isinstance(data, dict):
            raise self._error(SourceErrorKind.INVALID_RESPONSE, "dataset root is not an object")
        return data

    async def _fetch(self, query: IngestionQuery) -> RawBatch:
        data = await asyncio.to_thread(self._load)

        sections: dict[str, list[Any]] = {}
        for section in _SECTIONS:
            records = data.get(section) or []
            if not isinstance(records, list):
                raise self._error(SourceErrorKind.INVALID_RESPONSE, f"section {section!r} is not a list")
            sections[section] = [
                r for r in records if _matches(r, query.sector) and _matches(r, query.geography)
            ]

        logger.debug(
            "ingestion.curated_filtered",
            sector=query.sector,
            geography=query.geography,
            **{section: len(items) for section, items in sections.items()},
        )
        return RawBatch(source_id=self.source_id, source_type=self.source_type, records=sections)
