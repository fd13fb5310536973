"""Cache storage backends.

This module provides an abstract store interface and two concrete
implementations: Redis for deployed instances and a process-local
dictionary for development and tests.

The store is a plain persistence layer. It knows nothing about TTL tables
or statistics; :class:`~app.services.cache.service.CacheService` owns those.
"""

import copy
import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

import redis.asyncio as redis
from redis.exceptions import RedisError

from .entry import CacheCategory, CacheEntry, CategorySize

# Deletes members whose score in KEYS[1] is still within the bound, so an
# entry rewritten or read after the caller's scan is left alone.
# KEYS: index to check, expires index, accessed index.
# ARGV: bound, "inclusive" or "exclusive", entry key prefix, members...
CONDITIONAL_DELETE_SCRIPT = """
local bound = tonumber(ARGV[1])
local inclusive = ARGV[2] == "inclusive"
local removed = 0
for i = 4, #ARGV do
    local member = ARGV[i]
    local score = redis.call("ZSCORE", KEYS[1], member)
    if score then
        score = tonumber(score)
        if score < bound or (inclusive and score == bound) then
            redis.call("DEL", ARGV[3] .. member)
            redis.call("ZREM", KEYS[3], member)
            removed = removed + redis.call("ZREM", KEYS[2], member)
        end
    end
end
return removed
"""



class CacheStoreError(Exception):
    """Raised when the backing store cannot complete an operation."""


class CacheStore(ABC):
    """Abstract base class for cache stores.

    Defines the persistence operations the cache needs: upsert, point
    lookup, access bookkeeping, delete, and the range/aggregate queries used
    by the background sweeps.
    """

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None:
        """Insert or fully replace the entry stored under ``entry.key``."""
        pass

    @abstractmethod
    async def get(self, key: str) -> CacheEntry | None:
        """Retrieve an entry by key, expired or not.

        Returns:
            The stored entry if found, None otherwise.
        """
        pass

    @abstractmethod
    async def touch(self, key: str, accessed_at: datetime) -> None:
        """Record a read: set ``last_accessed_at`` and bump ``access_count``.

        A no-op if the key no longer exists.
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete an entry.

        Returns:
            True if the entry was deleted, False if it didn't exist.
        """
        pass

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        """Delete every entry with ``expires_at <= now``.

        Returns:
            Number of entries removed.
        """
        pass

    @abstractmethod
    async def evict(self, key: str, accessed_before: datetime) -> bool:
        """Delete an entry only if it was last read before ``accessed_before``.

        The check and the delete are atomic, so an entry read or rewritten
        since it was listed by :meth:`least_recently_accessed` survives.

        Returns:
            True if the entry was deleted.
        """
        pass

    @abstractmethod
    async def least_recently_accessed(self, before: datetime) -> list[tuple[str, int]]:
        """List entries last read before ``before``, oldest first.

        Returns:
            ``(key, size)`` pairs ordered by ``last_accessed_at`` ascending.
        """
        pass

    @abstractmethod
    async def size_by_category(self) -> dict[CacheCategory, CategorySize]:
        """Aggregate entry count and payload bytes per category."""
        pass

    async def close(self) -> None:
        """Release any connection held by the store."""


class MemoryCacheStore(CacheStore):
    """Dictionary-backed store living in the current process.

    Payloads are copied on the way in and out so callers never share
    mutable state with the stored entry.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def put(self, entry: CacheEntry) -> None:
        try:
            payload = json.loads(json.dumps(entry.payload))
        except (TypeError, ValueError) as e:
            raise CacheStoreError(f"Payload for {entry.key} is not JSON serializable: {e}") from e
        self._entries[entry.key] = CacheEntry(
            key=entry.key,
            category=entry.category,
            payload=payload,
            created_at=entry.created_at,
            expires_at=entry.expires_at,
            last_accessed_at=entry.last_accessed_at,
            access_count=entry.access_count,
            size=entry.size,
        )

    async def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return copy.deepcopy(entry)

    async def touch(self, key: str, accessed_at: datetime) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.last_accessed_at = accessed_at
        entry.access_count += 1

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def delete_expired(self, now: datetime) -> int:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def evict(self, key: str, accessed_before: datetime) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.last_accessed_at >= accessed_before:
            return False
        del self._entries[key]
        return True


    async def least_recently_accessed(self, before: datetime) -> list[tuple[str, int]]:
        stale = [entry for entry in self._entries.values() if entry.last_accessed_at < before]
        stale.sort(key=lambda entry: entry.last_accessed_at)
        return [(entry.key, entry.size) for entry in stale]

    async def size_by_category(self) -> dict[CacheCategory, CategorySize]:
        sizes: dict[CacheCategory, CategorySize] = {}
        for entry in self._entries.values():
            bucket = sizes.setdefault(entry.category, CategorySize())
            bucket.count += 1
            bucket.total_bytes += entry.size
        return sizes


def _to_score(value: datetime) -> float:
    return value.timestamp()


def _from_score(value: str | float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class RedisCacheStore(CacheStore):
    """Redis-based implementation of the cache store.

    Layout, for a prefix of ``cache:``:

    - ``cache:entry:{key}``: hash holding one entry. It also carries a
      native Redis expiry at ``expires_at``, so the server drops it even
      when no sweep runs.
    - ``cache:expires``: sorted set of keys scored by ``expires_at``.
    - ``cache:accessed``: sorted set of keys scored by ``last_accessed_at``.

    Attributes:
        _client: The Redis async client instance.
        _prefix: Namespace prepended to every Redis key.
    """

    BATCH_SIZE = 500

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        prefix: str = "cache:",
        client: redis.Redis | None = None,
    ) -> None:
        """Initialize the Redis cache store.

        Args:
            redis_url: Redis connection URL. Defaults to localhost:6379.
            prefix: Namespace for every key the store writes.
            client: Pre-built client; when given, ``redis_url`` is ignored.
        """
        self._redis_url = redis_url
        self._prefix = prefix
        self._client: redis.Redis | None = client
        self._expires_key = f"{prefix}expires"
        self._accessed_key = f"{prefix}accessed"

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if self._client is None:
            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _ensure_connected(self) -> redis.Redis:
        if self._client is None:
            await self.connect()
        return self._client  # type: ignore

    def _entry_key(self, key: str) -> str:
        return f"{self._prefix}entry:{key}"

    @contextmanager
    def _storage_errors(self, operation: str) -> Iterator[None]:
        """Translate Redis and serialization failures into CacheStoreError."""
        try:
            yield
        except RedisError as e:
            raise CacheStoreError(f"Redis {operation} failed: {e}") from e
        except (TypeError, ValueError) as e:
            raise CacheStoreError(f"Could not {operation} cache entry: {e}") from e

    async def put(self, entry: CacheEntry) -> None:
        with self._storage_errors("put"):
            mapping = {
                "category": entry.category.value,
                "payload": json.dumps(entry.payload),
                "created_at": _to_score(entry.created_at),
                "expires_at": _to_score(entry.expires_at),
                "last_accessed_at": _to_score(entry.last_accessed_at),
                "access_count": entry.access_count,
                "size": entry.size,
            }
            client = await self._ensure_connected()
            entry_key = self._entry_key(entry.key)
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(entry_key)
                pipe.hset(entry_key, mapping=mapping)
                pipe.pexpireat(entry_key, entry.expires_at)
                pipe.zadd(self._expires_key, {entry.key: _to_score(entry.expires_at)})
                pipe.zadd(self._accessed_key, {entry.key: _to_score(entry.last_accessed_at)})
                await pipe.execute()

    async def get(self, key: str) -> CacheEntry | None:
        with self._storage_errors("get"):
            client = await self._ensure_connected()
            data = await client.hgetall(self._entry_key(key))
            # A hash without payload is a leftover of a touch racing a delete
            if not data or "payload" not in data:
                return None
            return CacheEntry(
                key=key,
                category=CacheCategory(data["category"]),
                payload=json.loads(data["payload"]),
                created_at=_from_score(data["created_at"]),
                expires_at=_from_score(data["expires_at"]),
                last_accessed_at=_from_score(data["last_accessed_at"]),
                access_count=int(data.get("access_count", 0)),
                size=int(data.get("size", 0)),
            )

    async def touch(self, key: str, accessed_at: datetime) -> None:
        with self._storage_errors("touch"):
            client = await self._ensure_connected()
            entry_key = self._entry_key(key)
            if not await client.exists(entry_key):
                return
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(entry_key, "last_accessed_at", _to_score(accessed_at))
                pipe.hincrby(entry_key, "access_count", 1)
                pipe.zadd(self._accessed_key, {key: _to_score(accessed_at)}, xx=True)
                await pipe.execute()

    async def delete(self, key: str) -> bool:
        with self._storage_errors("delete"):
            client = await self._ensure_connected()
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(self._entry_key(key))
                pipe.zrem(self._expires_key, key)
                pipe.zrem(self._accessed_key, key)
                deleted, _, _ = await pipe.execute()
            return deleted > 0

    async def _delete_if_due(
        self, client: redis.Redis, index_key: str, bound: datetime, inclusive: bool, keys: list[str]
    ) -> int:
        script = client.register_script(CONDITIONAL_DELETE_SCRIPT)
        removed = 0
        for start in range(0, len(keys), self.BATCH_SIZE):
            batch = keys[start : start + self.BATCH_SIZE]
            removed += int(
                await script(
                    keys=[index_key, self._expires_key, self._accessed_key],
                    args=[
                        _to_score(bound),
                        "inclusive" if inclusive else "exclusive",
                        self._entry_key(""),
                        *batch,
                    ],
                )
            )
        return removed

    async def delete_expired(self, now: datetime) -> int:
        with self._storage_errors("sweep"):
            client = await self._ensure_connected()
            keys = await client.zrangebyscore(self._expires_key, "-inf", _to_score(now))
            if not keys:
                return 0
            return await self._delete_if_due(client, self._expires_key, now, True, keys)

    async def evict(self, key: str, accessed_before: datetime) -> bool:
        with self._storage_errors("evict"):
            client = await self._ensure_connected()
            removed = await self._delete_if_due(client, self._accessed_key, accessed_before, False, [key])
            return removed > 0


    async def least_recently_accessed(self, before: datetime) -> list[tuple[str, int]]:
        with self._storage_errors("scan"):
            client = await self._ensure_connected()
            # "(" makes the upper bound exclusive
            keys = await client.zrangebyscore(self._accessed_key, "-inf", f"({_to_score(before)}")
            if not keys:
                return []
            async with client.pipeline(transaction=False) as pipe:
                for key in keys:
                    pipe.hget(self._entry_key(key), "size")
                sizes = await pipe.execute()
            return [(key, int(size or 0)) for key, size in zip(keys, sizes)]

    async def size_by_category(self) -> dict[CacheCategory, CategorySize]:
        with self._storage_errors("measure"):
            client = await self._ensure_connected()
            keys = await client.zrange(self._accessed_key, 0, -1)
            if not keys:
                return {}
            async with client.pipeline(transaction=False) as pipe:
                for key in keys:
                    pipe.hmget(self._entry_key(key), ["category", "size"])
                rows = await pipe.execute()

            sizes: dict[CacheCategory, CategorySize] = {}
            for category, size in rows:
                # Hashes already dropped by Redis expiry are still indexed until the next sweep
                if category is None:
                    continue
                bucket = sizes.setdefault(CacheCategory(category), CategorySize())
                bucket.count += 1
                bucket.total_bytes += int(size or 0)
            return sizes
