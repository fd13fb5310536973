"""Travel Explorer Services.

Service layer components:
- Cache: TTL response cache on Redis (in-memory store for development),
  with background expiry sweeps and size reclamation
- Places: Google Places/Maps client answering from the cache when possible
"""

from .cache import (
    CacheCategory,
    CacheJanitor,
    CacheService,
    CacheStore,
    CacheStoreError,
    InvalidCacheCategoryError,
    MemoryCacheStore,
    RedisCacheStore,
)
from .places import GooglePlacesService, PlacesAPIError

__all__ = [
    # Cache
    "CacheCategory",
    "CacheJanitor",
    "CacheService",
    "CacheStore",
    "CacheStoreError",
    "InvalidCacheCategoryError",
    "MemoryCacheStore",
    "RedisCacheStore",
    # Places
    "GooglePlacesService",
    "PlacesAPIError",
]
