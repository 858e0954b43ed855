"""Persistence boundary for imported entities.

The pipeline only needs to ask whether an entity is already known and to
save a new one.  :class:`CacheEntityStore` implements that on top of the
:class:`~ecohub.services.cache.CacheManager`, indexing each entity under
every one of its identity keys so a later run recognises it by link or
by name.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import structlog

from ecohub.models.entities import CandidateEntity
from ecohub.services.cache import CacheManager
from ecohub.services.ingestion.errors import PersistenceError
from ecohub.services.ingestion.merger import identity_keys

logger = structlog.get_logger(__name__)

_KEY_PREFIX = "entity:"


@runtime_checkable
class EntityStore(Protocol):
    async def exists(self, entity: CandidateEntity) -> bool: ...

    async def save(self, entity: CandidateEntity) -> None:
        """Persist *entity*; raise :class:`PersistenceError` on failure."""
        ...


class CacheEntityStore:
    """Entity store kept in the shared cache.

    Parameters
    ----------
    cache:
        Cache manager holding the entities.
    ttl_seconds:
        Optional expiry for stored entities.  ``None`` keeps them until
        the cache evicts them.
    """

    def __init__(self, cache: CacheManager, *, ttl_seconds: int | None = None) -> None:
        self._cache = cache
        self._ttl = ttl_seconds

    async def exists(self, entity: CandidateEntity) -> bool:
        for key in identity_keys(entity):
            if await self._cache.exists(_KEY_PREFIX + key):
                return True
        return False

    async def save(self, entity: CandidateEntity) -> None:
        keys = identity_keys(entity)
        if not keys:
            raise PersistenceError("entity has no identity")

        document = entity.model_dump(mode="json")
        try:
            for key in keys:
                await self._cache.set(_KEY_PREFIX + key, document, ttl_seconds=self._ttl)
        except (TypeError, ValueError, OSError) as exc:
            raise PersistenceError(str(exc) or type(exc).__name__) from exc

        logger.debug("ingestion.entity_saved", kind=entity.kind, name=entity.display_name)
