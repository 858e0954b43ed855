from __future__ import annotations

from enum import StrEnum


class EntityKind(StrEnum):
    __slots__ = ()

    STARTUP = "startup"
    OPPORTUNITY = "opportunity"
    EVENT = "event"


class SourceType(StrEnum):
    """Payload shape produced by a source client; selects the field mapping."""

    __slots__ = ()

    SEARCH_RESULTS = "search_results"
    SECTIONED = "sectioned"


class SourceErrorKind(StrEnum):
    __slots__ = ()

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    INVALID_RESPONSE = "invalid_response"
    UNAVAILABLE = "unavailable"

    @property
    def transient(self) -> bool:
        return self is not SourceErrorKind.INVALID_RESPONSE
