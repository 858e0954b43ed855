"""Ingestion error taxonomy.

Only :class:`AlreadyRunningError` is meant to reach a caller.  Source and
persistence failures are recorded on the run's ``ImportResult`` and never
abort the batch.
"""

from __future__ import annotations

from ecohub.models.enums import SourceErrorKind


class IngestionError(RuntimeError):
    """Base error for the ingestion subsystem."""


class SourceError(IngestionError):
    """A single source failed to produce a batch.

    Returned (not raised) by :meth:`SourceClient.fetch` so that the
    pipeline can treat it as "zero candidates plus one error entry".
    """

    def __init__(self, source_id: str, kind: SourceErrorKind, message: str) -> None:
        super().__init__(f"{source_id}: {kind.value}: {message}")
        self.source_id = source_id
        self.kind = kind
        self.message = message

    @property
    def transient(self) -> bool:
        return self.kind.transient


class PersistenceError(IngestionError):
    """The store rejected one entity."""


class AlreadyRunningError(IngestionError):
    """An ingestion run is already in flight."""

    def __init__(self, message: str = "An ingestion run is already in progress") -> None:
        super().__init__(message)
