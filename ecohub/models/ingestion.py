from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from ecohub.models.enums import SourceType


class IngestionQuery(BaseModel):
    """What a run asks every source for."""

    sector: str | None = None
    geography: str | None = None
    keywords: list[str] = Field(default_factory=list)

    def describe(self) -> str:
        parts = [self.sector or "startup ecosystem"]
        if self.geography:
            parts.append(f"in {self.geography}")
        if self.keywords:
            parts.append(f"({', '.join(self.keywords)})")
        return " ".join(parts)


@dataclass(frozen=True)
class RawBatch:
    """Unprocessed payload returned by one source for one query.

    ``records`` holds whatever structured items the provider returned;
    ``text`` holds a free-form answer when the provider did not return
    structured data.  Neither is interpreted outside the normalizer.
    """

    source_id: str
    source_type: SourceType
    records: list[Any] | dict[str, Any] = field(default_factory=list)
    text: str | None = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def size(self) -> int:
        if isinstance(self.records, dict):
            return sum(len(v) for v in self.records.values() if isinstance(v, list))
        return len(self.records)
