"""Cross-source merging, confidence filtering and deduplication.

Matching strategy, per entity kind:

1. Canonical link (startup website, opportunity/event link) when present.
2. Normalised name or title together with the normalised sector.

Two candidates are duplicates when any identity key matches, directly or
through a third candidate.  The one with strictly higher confidence
survives, in the position of the first occurrence; on an exact tie the
first encountered is kept, so the result depends only on source order
and record order.
"""

from __future__ import annotations

import string
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import assert_never
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import structlog

from ecohub.models.entities import CandidateEntity, Event, Opportunity, Startup

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Identity helpers
# ---------------------------------------------------------------------------

_TRACKING_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "utm_id",
        "gclid",
        "fbclid",
        "mc_cid",
        "mc_eid",
        "ref",
        "ref_src",
        "source",
    }
)

# Token sequences, longest first.
_LEGAL_SUFFIXES: tuple[tuple[str, ...], ...] = (
    ("sdn", "bhd"),
    ("pte", "ltd"),
    ("bhd",),
    ("inc",),
    ("ltd",),
    ("llc",),
    ("plc",),
    ("corp",),
)

_PUNCT_TABLE = str.maketrans({c: " " for c in string.punctuation})


def canonical_link(url: str | None) -> str:
    """Canonical form of *url* for identity comparison.

    Lowercases the host, drops ``www.``, the scheme, the fragment,
    tracking query parameters and a trailing slash, and sorts the
    remaining query parameters.  Returns ``""`` for an empty URL.
    """
    if not url or not url.strip():
        return ""
    text = url.strip()
    if "://" not in text:
        text = f"https://{text}"

    parsed = urlparse(text)
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    if not host:
        return ""
    if parsed.port:
        host = f"{host}:{parsed.port}"

    kept = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k.lower() not in _TRACKING_PARAMS]
    kept.sort(key=lambda kv: (kv[0].lower(), kv[1]))

    path = parsed.path.rstrip("/")
    return urlunparse(("", host, path, "", urlencode(kept, doseq=True), "")).lstrip("/")


def normalise_name(name: str, *, strip_legal_suffix: bool = False) -> str:
    """Case-folded name with punctuation removed and whitespace collapsed."""
    tokens = name.casefold().translate(_PUNCT_TABLE).split()
    if strip_legal_suffix:
        for suffix in _LEGAL_SUFFIXES:
            if len(tokens) > len(suffix) and tuple(tokens[-len(suffix):]) == suffix:
                tokens = tokens[: -len(suffix)]
                break
    return " ".join(tokens)


def identity_keys(entity: CandidateEntity) -> tuple[str, ...]:
    """All identity keys of *entity*, strongest first."""
    keys: list[str] = []

    link = canonical_link(entity.url)
    if link:
        keys.append(f"{entity.kind}|url|{link}")

    name = normalise_name(entity.display_name, strip_legal_suffix=isinstance(entity, Startup))
    sector = normalise_name(entity.sector or "")
    if name:
        keys.append(f"{entity.kind}|name|{name}|{sector}")

    return tuple(keys)


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


@dataclass
class MergeResult:
    entities: list[CandidateEntity] = field(default_factory=list)
    below_threshold: int = 0
    duplicates: int = 0


def merge(candidates: Iterable[CandidateEntity], threshold: float) -> MergeResult:
    """Filter *candidates* by confidence and collapse duplicates.

    Candidates sharing any identity key fall into one group, transitively:
    a candidate matching two earlier groups joins them.  Each group is
    represented by its highest-confidence member (the earliest on a tie)
    in the position of the group's first member, so no two entities of
    the result share an identity key.

    Parameters
    ----------
    candidates:
        Entities in source order, then record order.
    threshold:
        Minimum confidence (inclusive) an entity needs to survive.
        Entities below it are counted in ``below_threshold`` and never
        take part in deduplication.
    """
    result = MergeResult()
    accepted: list[CandidateEntity] = []
    parent: list[int] = []
    index: dict[str, int] = {}

    def find(position: int) -> int:
        while parent[position] != position:
            parent[position] = parent[parent[position]]
            position = parent[position]
        return position

    for candidate in candidates:
        if candidate.confidence < threshold:
            result.below_threshold += 1
            continue

        position = len(accepted)
        accepted.append(candidate)
        parent.append(position)

        for key in identity_keys(candidate):
            if key not in index:
                index[key] = position
                continue
            a, b = find(index[key]), find(position)
            if a != b:
                # The root is always the group's first position.
                parent[max(a, b)] = min(a, b)

    best: dict[int, int] = {}
    for position, entity in enumerate(accepted):
        root = find(position)
        current = best.get(root)
        if current is None:
            best[root] = position
        elif entity.confidence > accepted[current].confidence:
            logger.debug(
                "ingestion.duplicate_replaced",
                name=entity.display_name,
                kept_source=entity.source,
                dropped_source=accepted[current].source,
            )
            best[root] = position

    result.entities = [accepted[best[root]] for root in sorted(best)]
    result.duplicates = len(accepted) - len(best)
    return result


def count_by_kind(entities: Iterable[CandidateEntity]) -> tuple[int, int, int]:
    """Return ``(startups, opportunities, events)``."""
    startups = opportunities = events = 0
    for entity in entities:
        match entity:
            case Startup():
                startups += 1
            case Opportunity():
                opportunities += 1
            case Event():
                events += 1
            case _:
                assert_never(entity)
    return startups, opportunities, events
