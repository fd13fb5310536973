"""TTL cache service for upstream API responses.

Every upstream call (Google Places, weather, photos) can be answered from
this cache. Caching is strictly best effort: a broken store turns every
lookup into a miss and every write into a no-op, and callers always fall
through to the authoritative upstream fetch.

Lifecycle of an entry:
- ``set`` writes a fresh entry whose expiry comes from the category TTL table
- ``get`` returns it while ``now < expires_at`` and records the access
- ``sweep_expired`` removes it once expired (hourly by default)
- ``reclaim`` removes long-unread entries when the store grows too large
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from .entry import (
    DEFAULT_TTLS,
    CacheCategory,
    CacheEntry,
    CacheStatistics,
    CategorySize,
    InvalidCacheCategoryError,
    build_key,
    parse_category,
    utcnow,
)
from .store import CacheStore, CacheStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_SIZE_BYTES = 100 * 1024 * 1024
DEFAULT_STALE_AFTER = timedelta(days=7)


class CacheService:
    """Category-aware TTL cache in front of a :class:`CacheStore`.

    Attributes:
        _store: Backing store for entries.
        _ttls: Category to lifetime table, consulted only when writing.
        _stats: Hit/miss counters owned by this instance.
    """

    def __init__(
        self,
        store: CacheStore,
        ttls: Mapping[CacheCategory, timedelta] | None = None,
        *,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        strict: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the cache service.

        Args:
            store: Backing store for entries.
            ttls: Per-category lifetimes, merged over ``DEFAULT_TTLS``.
            max_size_bytes: Total payload size above which ``reclaim`` evicts.
            stale_after: Entries unread for longer than this may be reclaimed.
            strict: Raise on unknown categories instead of treating them as misses.
            clock: Returns the current time as an aware UTC datetime.

        Raises:
            ValueError: If any TTL is not strictly positive.
        """
        table = dict(DEFAULT_TTLS)
        if ttls:
            table.update({parse_category(category): ttl for category, ttl in ttls.items()})
        for category, ttl in table.items():
            if ttl <= timedelta(0):
                raise ValueError(f"TTL for {category.value} must be positive, got {ttl}")

        self._store = store
        self._ttls = table
        self._max_size_bytes = max_size_bytes
        self._stale_after = stale_after
        self._strict = strict
        self._clock = clock
        self._stats = CacheStatistics(up_since=clock())

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def ttls(self) -> Mapping[CacheCategory, timedelta]:
        return dict(self._ttls)

    def _resolve(self, category: CacheCategory | str, operation: str) -> CacheCategory | None:
        """Validate a category; None means the call should degrade to a miss/no-op."""
        try:
            return parse_category(category)
        except InvalidCacheCategoryError:
            if self._strict:
                raise
            logger.warning(f"[CACHE] {operation} with unknown category {category!r}, skipping cache")
            return None

    async def get(self, category: CacheCategory | str, identifier: str) -> Any | None:
        """Retrieve a live cached payload.

        Args:
            category: Payload category.
            identifier: Caller-built identifier (place id, ``"lat,lng"``...).

        Returns:
            The cached payload, or None on a miss, an expired entry, or a
            store failure.
        """
        self._stats.record_request()
        try:
            resolved = self._resolve(category, "get")
        except InvalidCacheCategoryError:
            self._stats.record_miss()
            raise
        if resolved is None:
            self._stats.record_miss()
            return None

        key = build_key(resolved, identifier)
        try:
            entry = await self._store.get(key)
        except CacheStoreError as e:
            logger.warning(f"[CACHE] Read failed for {key}: {e}")
            self._stats.record_miss()
            return None

        now = self._clock()
        if entry is None or not entry.is_live(now):
            self._stats.record_miss()
            return None

        self._stats.record_hit()
        try:
            await self._store.touch(key, now)
        except CacheStoreError as e:
            logger.warning(f"[CACHE] Could not record access for {key}: {e}")
        return entry.payload

    async def set(self, category: CacheCategory | str, identifier: str, payload: Any) -> None:
        """Store a payload, replacing any previous entry for the same key.

        Never raises on storage failure; the write is simply dropped.
        """
        resolved = self._resolve(category, "set")
        if resolved is None:
            return

        try:
            entry = CacheEntry.create(
                resolved, identifier, payload, self._ttls[resolved], self._clock()
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"[CACHE] Payload for {build_key(resolved, identifier)} is not JSON serializable: {e}")
            return

        try:
            await self._store.put(entry)
        except CacheStoreError as e:
            logger.warning(f"[CACHE] Write failed for {entry.key}: {e}")

    async def delete(self, category: CacheCategory | str, identifier: str) -> None:
        """Remove an entry if present. Never raises on storage failure."""
        resolved = self._resolve(category, "delete")
        if resolved is None:
            return

        key = build_key(resolved, identifier)
        try:
            await self._store.delete(key)
        except CacheStoreError as e:
            logger.warning(f"[CACHE] Delete failed for {key}: {e}")

    async def with_cache(
        self,
        category: CacheCategory | str,
        identifier: str,
        compute: Callable[[], Awaitable[T]],
    ) -> T:
        """Return the cached payload, or compute, cache and return it.

        A None result from ``compute`` is returned but not cached. Errors
        raised by ``compute`` propagate to the caller.
        """
        cached = await self.get(category, identifier)
        if cached is not None:
            return cached

        value = await compute()
        if value is not None:
            await self.set(category, identifier, value)
        return value

    async def sweep_expired(self) -> int:
        """Delete every expired entry.

        Returns:
            Number of entries removed.

        Raises:
            CacheStoreError: If the store is unreachable.
        """
        removed = await self._store.delete_expired(self._clock())
        logger.info(f"[CACHE] Expiry sweep removed {removed} entries")
        return removed

    async def size_by_category(self) -> dict[CacheCategory, CategorySize]:
        return await self._store.size_by_category()

    async def reclaim(self) -> int:
        """Evict long-unread entries while the store exceeds its size ceiling.

        Entries not read within ``stale_after`` are eligible and go oldest
        access first. Nothing is evicted while the store is under the
        ceiling, and recently read entries are never evicted.

        Returns:
            Number of entries removed.

        Raises:
            CacheStoreError: If the store is unreachable.
        """
        sizes = await self._store.size_by_category()
        total = sum(bucket.total_bytes for bucket in sizes.values())
        if total <= self._max_size_bytes:
            logger.debug(f"[CACHE] Size {total} bytes within limit, nothing to reclaim")
            return 0

        cutoff = self._clock() - self._stale_after
        removed = 0
        for key, size in await self._store.least_recently_accessed(cutoff):
            if total <= self._max_size_bytes:
                break
            if await self._store.evict(key, cutoff):
                total -= size
                removed += 1

        logger.info(
            f"[CACHE] Reclaimed {removed} stale entries, size now {total} bytes "
            f"(limit {self._max_size_bytes})"
        )
        return removed

    def stats(self) -> dict[str, Any]:
        """Snapshot of hit/miss counters since start or the last reset."""
        return self._stats.snapshot(self._clock())

    def reset_stats(self) -> None:
        """Zero all counters and restart uptime. Stored entries are untouched."""
        self._stats.reset(self._clock())

    async def close(self) -> None:
        await self._store.close()
