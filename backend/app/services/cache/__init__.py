"""Response cache module.

TTL cache for upstream API responses, persisted in Redis, with background
expiry and size reclamation.
"""

from .entry import (
    DEFAULT_TTLS,
    CacheCategory,
    CacheEntry,
    CacheStatistics,
    CategorySize,
    InvalidCacheCategoryError,
    build_key,
)
from .janitor import CacheJanitor
from .service import CacheService
from .store import CacheStore, CacheStoreError, MemoryCacheStore, RedisCacheStore

__all__ = [
    "DEFAULT_TTLS",
    "CacheCategory",
    "CacheEntry",
    "CacheStatistics",
    "CategorySize",
    "InvalidCacheCategoryError",
    "build_key",
    "CacheJanitor",
    "CacheService",
    "CacheStore",
    "CacheStoreError",
    "MemoryCacheStore",
    "RedisCacheStore",
]
