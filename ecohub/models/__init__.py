from ecohub.models.entities import (
    CandidateEntity,
    Event,
    Opportunity,
    Startup,
    candidate_adapter,
)
from ecohub.models.enums import EntityKind, SourceErrorKind, SourceType
from ecohub.models.ingestion import IngestionQuery, RawBatch

__all__ = [
    "CandidateEntity",
    "EntityKind",
    "Event",
    "IngestionQuery",
    "Opportunity",
    "RawBatch",
    "SourceErrorKind",
    "SourceType",
    "Startup",
    "candidate_adapter",
]
