"""EcoHub service layer -- cache and ingestion."""

from __future__ import annotations

from ecohub.services.cache import CacheManager, InMemoryCacheBackend, RedisCacheBackend

__all__ = [
    "CacheManager",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
]
