"""Map raw source batches onto typed candidate entities.

Pure and stateless: no network or persistence calls.  Each
:class:`SourceType` has one fixed field mapping:

``search_results``
    A flat list of records tagged with ``type`` (``startup``,
    ``opportunity``, ``event`` or ``insight``), as returned by the chat
    search providers.  Extra attributes live either at the top level or
    under ``metadata``.  A batch that only carries free text is first
    split into records by :func:`parse_listing_text`.

``sectioned``
    A mapping with ``startups``, ``opportunities`` and ``events`` lists,
    each record already shaped like its entity.

Records that cannot be mapped (not a mapping, insight/unknown type, no
name or description, invalid values) are dropped and counted.  They are
never reported as errors.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, assert_never

import structlog
from pydantic import ValidationError

from ecohub.models.entities import CandidateEntity, candidate_adapter
from ecohub.models.enums import EntityKind, SourceType
from ecohub.models.ingestion import RawBatch

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIDENCE = 0.5

_KIND_ALIASES: dict[str, EntityKind] = {
    "startup": EntityKind.STARTUP,
    "startups": EntityKind.STARTUP,
    "company": EntityKind.STARTUP,
    "opportunity": EntityKind.OPPORTUNITY,
    "opportunities": EntityKind.OPPORTUNITY,
    "grant": EntityKind.OPPORTUNITY,
    "funding": EntityKind.OPPORTUNITY,
    "accelerator": EntityKind.OPPORTUNITY,
    "competition": EntityKind.OPPORTUNITY,
    "programme": EntityKind.OPPORTUNITY,
    "program": EntityKind.OPPORTUNITY,
    "event": EntityKind.EVENT,
    "events": EntityKind.EVENT,
    "conference": EntityKind.EVENT,
}

_SECTION_KINDS: dict[str, EntityKind] = {
    "startups": EntityKind.STARTUP,
    "opportunities": EntityKind.OPPORTUNITY,
    "events": EntityKind.EVENT,
}

# Heading keywords for free-text answers, checked in this order.
_TEXT_KIND_KEYWORDS: tuple[tuple[EntityKind, tuple[str, ...]], ...] = (
    (EntityKind.EVENT, ("event", "conference", "summit", "demo day", "meetup", "workshop", "hackathon", "festival")),
    (
        EntityKind.OPPORTUNITY,
        ("grant", "fund", "accelerator", "incubator", "programme", "program", "competition", "fellowship", "award"),
    ),
    (EntityKind.STARTUP, ("startup", "company", "sdn bhd", "technologies", "labs")),
)

_DATE_FORMATS = ("%Y-%m-%d", "%B %d, %Y", "%B %d %Y", "%b %d, %Y", "%b %d %Y", "%d %B %Y", "%d %b %Y", "%d/%m/%Y")

_WS_RE = re.compile(r"\s+")
_URL_RE = re.compile(r"https?://[^\s)\]>\"']+")
_YEAR_RE = re.compile(r"\b(19|20)\d{2}\b")
_NUMBERED_RE = re.compile(r"^(?:\d+[.)]|#{1,6})\s+(.*)$")
_BULLET_RE = re.compile(r"^[-*•]\s+(.*)$")
_BOLD_RE = re.compile(r"^\*\*(.+?)\*\*\s*[:\-–]?\s*(.*)$")

_MIN_DESCRIPTION_LINE = 20


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass
class NormalizedBatch:
    """Entities mapped from one batch plus the number of dropped records."""

    source_id: str
    entities: list[CandidateEntity] = field(default_factory=list)
    dropped: int = 0


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _clean(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = _WS_RE.sub(" ", str(value)).strip()
    return text or None


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        if isinstance(value, (int, float)):
            number = float(value)
        else:
            number = float(str(value).strip().rstrip("%"))
    except (ValueError, OverflowError):
        return None
    # nan and inf count as missing
    return number if math.isfinite(number) else None


def resolve_confidence(record: Mapping[str, Any]) -> float:
    """Confidence from the record (0..1, or a 0..100 relevance score), clamped."""
    value = _number(record.get("confidence"))
    if value is None:
        relevance = _number(record.get("relevance_score", record.get("relevanceScore")))
        if relevance is not None:
            value = relevance / 100.0
    if value is None:
        return DEFAULT_CONFIDENCE
    return min(max(value, 0.0), 1.0)


def parse_date(value: Any) -> date | None:
    """Parse the date formats providers commonly emit; ``None`` if unparseable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = _clean(value)
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _year(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    text = _clean(value)
    if not text:
        return None
    match = _YEAR_RE.search(text)
    return int(match.group(0)) if match else None


def _build(fields: dict[str, Any]) -> CandidateEntity | None:
    try:
        return candidate_adapter.validate_python(fields)
    except ValidationError as exc:
        logger.debug(
            "ingestion.normalization_invalid",
            kind=fields.get("kind"),
            errors=exc.error_count(),
        )
        return None


def _entity(kind: EntityKind, get: Any, *, source: str, confidence: float, url: str | None) -> CandidateEntity | None:
    """Build one entity of *kind* reading attributes through *get(name)*."""
    title = _clean(get("title")) or _clean(get("name"))
    description = _clean(get("description")) or _clean(get("summary"))
    if not title or not description:
        return None

    common: dict[str, Any] = {
        "kind": kind.value,
        "description": description,
        "sector": _clean(get("sector")),
        "location": _clean(get("location")),
        "source": source,
        "confidence": confidence,
    }

    match kind:
        case EntityKind.STARTUP:
            return _build(
                {
                    **common,
                    "name": title,
                    "website": _clean(get("website")) or url,
                    "stage": _clean(get("stage")),
                    "funding_amount": _clean(get("funding_amount")) or _clean(get("amount")),
                    "founded_year": _year(get("founded_year")),
                }
            )
        case EntityKind.OPPORTUNITY:
            return _build(
                {
                    **common,
                    "title": title,
                    "provider": _clean(get("provider")),
                    "opportunity_type": (_clean(get("opportunity_type")) or "grant").lower(),
                    "deadline": parse_date(get("deadline")),
                    "amount": _clean(get("amount")),
                    "link": _clean(get("link")) or url,
                }
            )
        case EntityKind.EVENT:
            return _build(
                {
                    **common,
                    "name": title,
                    "date": parse_date(get("date")),
                    "venue": _clean(get("venue")),
                    "link": _clean(get("link")) or url,
                }
            )
        case _:
            assert_never(kind)


# ---------------------------------------------------------------------------
# Per source-type mappings
# ---------------------------------------------------------------------------


def _map_search_result(record: Any, source_id: str) -> CandidateEntity | None:
    if not isinstance(record, Mapping):
        return None

    kind = _KIND_ALIASES.get(str(record.get("type") or record.get("category") or "").strip().lower())
    if kind is None:
        return None

    metadata = record.get("metadata")
    meta: Mapping[str, Any] = metadata if isinstance(metadata, Mapping) else {}

    def get(name: str) -> Any:
        value = record.get(name)
        return value if value not in (None, "") else meta.get(name)

    # In search results ``type`` tags the entity; the opportunity sub-type
    # is only read from metadata.
    def get_opportunity_aware(name: str) -> Any:
        if name == "opportunity_type":
            return meta.get("opportunity_type") or meta.get("type")
        return get(name)

    return _entity(
        kind,
        get_opportunity_aware,
        source=_clean(record.get("source")) or source_id,
        confidence=resolve_confidence(record),
        url=_clean(record.get("url")),
    )


def _map_sectioned(kind: EntityKind, record: Any, source_id: str) -> CandidateEntity | None:
    if not isinstance(record, Mapping):
        return None

    def get(name: str) -> Any:
        if name == "opportunity_type":
            return record.get("opportunity_type") or record.get("type")
        return record.get(name)

    return _entity(
        kind,
        get,
        source=_clean(record.get("source")) or source_id,
        confidence=resolve_confidence(record),
        url=_clean(record.get("url")),
    )


# ---------------------------------------------------------------------------
# Free-text answers
# ---------------------------------------------------------------------------


def _text_kind(title: str) -> str:
    lowered = title.lower()
    for kind, keywords in _TEXT_KIND_KEYWORDS:
        if any(k in lowered for k in keywords):
            return kind.value
    return "insight"


def _heading(line: str) -> tuple[str, str] | None:
    """Return ``(title, inline_description)`` if *line* starts a new item."""
    numbered = _NUMBERED_RE.match(line)
    bullet = _BULLET_RE.match(line)
    body = numbered.group(1) if numbered else bullet.group(1) if bullet else line

    bold = _BOLD_RE.match(body)
    if bold:
        return bold.group(1).strip(" :"), bold.group(2).strip()

    if numbered:
        title, sep, rest = body.partition(": ")
        if not sep:
            title, sep, rest = body.partition(" - ")
        return title.strip(" :"), rest.strip()

    if not bullet and line[0].isupper() and len(line) < 100 and line.endswith(":"):
        return line.rstrip(":").strip(), ""

    return None


def parse_listing_text(text: str) -> list[dict[str, Any]]:
    """Split a free-form listing answer into search-result records.

    Numbered, markdown-heading, bold or colon-terminated lines start a new
    item; following lines longer than 20 characters form its description.
    The item type is inferred from keywords in the heading, or in the
    description when the heading has none.
    """
    records: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None

    def flush() -> None:
        if current and current.get("title") and current.get("description"):
            kind = _text_kind(current["title"])
            current["type"] = kind if kind != "insight" else _text_kind(current["description"])
            url = _URL_RE.search(current["description"])
            if url:
                current["url"] = url.group(0).rstrip(".,;")
            records.append(current)

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        heading = _heading(line)
        if heading is not None and heading[0]:
            flush()
            title, inline = heading
            current = {"title": title, "description": inline}
            continue

        if current is None:
            continue

        bullet = _BULLET_RE.match(line)
        content = bullet.group(1) if bullet else line
        if len(content) > _MIN_DESCRIPTION_LINE:
            current["description"] = f"{current['description']} {content}".strip()

    flush()
    return records


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _iter_mapped(batch: RawBatch) -> Iterable[CandidateEntity | None]:
    match batch.source_type:
        case SourceType.SEARCH_RESULTS:
            records = batch.records if isinstance(batch.records, list) else []
            if not records and batch.text:
                records = parse_listing_text(batch.text)
            for record in records:
                yield _map_search_result(record, batch.source_id)
        case SourceType.SECTIONED:
            sections = batch.records if isinstance(batch.records, Mapping) else {}
            for section, kind in _SECTION_KINDS.items():
                items = sections.get(section) or []
                if not isinstance(items, list):
                    yield None
                    continue
                for record in items:
                    yield _map_sectioned(kind, record, batch.source_id)
        case _:
            assert_never(batch.source_type)


def normalize(batch: RawBatch) -> NormalizedBatch:
    """Map *batch* onto candidate entities, counting unmappable records."""
    result = NormalizedBatch(source_id=batch.source_id)
    for entity in _iter_mapped(batch):
        if entity is None:
            result.dropped += 1
        else:
            result.entities.append(entity)

    logger.debug(
        "ingestion.normalized",
        source=batch.source_id,
        entities=len(result.entities),
        dropped=result.dropped,
    )
    return result
