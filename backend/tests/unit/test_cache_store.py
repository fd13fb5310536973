"""Unit tests for the cache stores.

RedisCacheStore is exercised against a small in-memory stand-in for the
redis.asyncio client that implements only the commands the store issues.
"""

import math
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.services.cache import (
    CacheCategory,
    CacheEntry,
    CacheService,
    CacheStoreError,
    MemoryCacheStore,
    RedisCacheStore,
)
from app.services.cache.store import CONDITIONAL_DELETE_SCRIPT

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _bound(value) -> tuple[float, bool]:
    """Parse a Redis score bound into (score, exclusive)."""
    if isinstance(value, str):
        if value == "-inf":
            return -math.inf, False
        if value == "+inf":
            return math.inf, False
        if value.startswith("("):
            return float(value[1:]), True
    return float(value), False


class FakePipeline:
    def __init__(self, client: "FakeRedis") -> None:
        self._client = client
        self._calls: list = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        self._calls = []

    def __getattr__(self, name):
        method = getattr(self._client, name)

        def queue(*args, **kwargs):
            self._calls.append((method, args, kwargs))
            return self

        return queue

    async def execute(self) -> list:
        results = [await method(*args, **kwargs) for method, args, kwargs in self._calls]
        self._calls = []
        return results


class FakeRedis:
    """Decoded-responses subset of redis.asyncio.Redis."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.expire_at: dict[str, datetime] = {}
        self.closed = False

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True

    async def exists(self, *names) -> int:
        return sum(1 for name in names if name in self.hashes)

    async def delete(self, *names) -> int:
        removed = 0
        for name in names:
            if self.hashes.pop(name, None) is not None:
                removed += 1
            self.expire_at.pop(name, None)
        return removed

    async def hset(self, name, key=None, value=None, mapping=None) -> int:
        fields = dict(mapping or {})
        if key is not None:
            fields[key] = value
        target = self.hashes.setdefault(name, {})
        added = sum(1 for field in fields if field not in target)
        target.update({field: str(val) for field, val in fields.items()})
        return added

    async def hgetall(self, name) -> dict:
        return dict(self.hashes.get(name, {}))

    async def hget(self, name, key):
        return self.hashes.get(name, {}).get(key)

    async def hmget(self, name, keys):
        data = self.hashes.get(name, {})
        return [data.get(key) for key in keys]

    async def hincrby(self, name, key, amount=1) -> int:
        target = self.hashes.setdefault(name, {})
        target[key] = str(int(target.get(key, 0)) + amount)
        return int(target[key])

    async def pexpireat(self, name, when) -> bool:
        self.expire_at[name] = when
        return name in self.hashes

    async def zadd(self, name, mapping, xx=False) -> int:
        zset = self.zsets.setdefault(name, {})
        added = 0
        for member, score in mapping.items():
            if xx and member not in zset:
                continue
            if member not in zset:
                added += 1
            zset[member] = float(score)
        return added

    async def zrem(self, name, *members) -> int:
        zset = self.zsets.get(name, {})
        return sum(1 for member in members if zset.pop(member, None) is not None)

    async def zrangebyscore(self, name, min, max) -> list[str]:
        low, low_exclusive = _bound(min)
        high, high_exclusive = _bound(max)
        items = sorted(self.zsets.get(name, {}).items(), key=lambda item: item[1])
        return [
            member
            for member, score in items
            if (score > low if low_exclusive else score >= low)
            and (score < high if high_exclusive else score <= high)
        ]

    async def zrange(self, name, start, end) -> list[str]:
        items = sorted(self.zsets.get(name, {}).items(), key=lambda item: item[1])
        members = [member for member, _ in items]
        return members[start:] if end == -1 else members[start:end + 1]

    def register_script(self, source: str) -> "FakeScript":
        return FakeScript(self, source)


class FakeScript:
    """Python rendition of the store's conditional-delete Lua script."""

    def __init__(self, client: FakeRedis, source: str) -> None:
        assert source == CONDITIONAL_DELETE_SCRIPT
        self._client = client

    async def __call__(self, keys=(), args=()) -> int:
        index_key, expires_key, accessed_key = keys
        bound, mode, entry_prefix, *members = args
        bound = float(bound)
        removed = 0
        for member in members:
            score = self._client.zsets.get(index_key, {}).get(member)
            if score is None:
                continue
            if score < bound or (mode == "inclusive" and score == bound):
                await self._client.delete(entry_prefix + member)
                await self._client.zrem(accessed_key, member)
                removed += await self._client.zrem(expires_key, member)
        return removed


class RacingRedis(FakeRedis):
    """Runs ``after_scan`` once, right after the next range scan returns."""

    def __init__(self) -> None:
        super().__init__()
        self.after_scan = None

    async def zrangebyscore(self, name, min, max) -> list[str]:
        members = await super().zrangebyscore(name, min, max)
        if self.after_scan is not None:
            hook, self.after_scan = self.after_scan, None
            await hook()
        return members



class DownRedis(FakeRedis):
    async def hgetall(self, name):
        raise RedisConnectionError("Connection refused")

    def pipeline(self, transaction: bool = True):
        raise RedisConnectionError("Connection refused")


def _entry(identifier: str, category=CacheCategory.PLACE_DETAILS, ttl=timedelta(hours=1), now=T0, payload=None):
    return CacheEntry.create(category, identifier, payload or {"id": identifier}, ttl, now)


class TestRedisCacheStore:
    """Tests for RedisCacheStore against the fake client."""

    def setup_method(self) -> None:
        self.client = FakeRedis()
        self.store = RedisCacheStore(prefix="test:", client=self.client)

    @pytest.mark.asyncio
    async def test_put_and_get(self) -> None:
        entry = _entry("abc", payload={"name": "Louvre", "rating": 4.7})
        await self.store.put(entry)

        loaded = await self.store.get("place_details:abc")
        assert loaded.payload == {"name": "Louvre", "rating": 4.7}
        assert loaded.category == CacheCategory.PLACE_DETAILS
        assert loaded.created_at == T0
        assert loaded.expires_at == T0 + timedelta(hours=1)
        assert loaded.last_accessed_at == T0
        assert loaded.access_count == 0
        assert loaded.size == entry.size

    @pytest.mark.asyncio
    async def test_layout(self) -> None:
        await self.store.put(_entry("abc"))
        assert "test:entry:place_details:abc" in self.client.hashes
        assert self.client.zsets["test:expires"]["place_details:abc"] == (T0 + timedelta(hours=1)).timestamp()
        assert self.client.zsets["test:accessed"]["place_details:abc"] == T0.timestamp()
        assert self.client.expire_at["test:entry:place_details:abc"] == T0 + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_get_missing(self) -> None:
        assert await self.store.get("place_details:nope") is None

    @pytest.mark.asyncio
    async def test_put_replaces_entry(self) -> None:
        await self.store.put(_entry("abc", payload={"v": 1}))
        await self.store.touch("place_details:abc", T0 + timedelta(minutes=1))
        await self.store.put(_entry("abc", payload={"v": 2}, now=T0 + timedelta(minutes=2)))

        loaded = await self.store.get("place_details:abc")
        assert loaded.payload == {"v": 2}
        assert loaded.access_count == 0
        assert loaded.created_at == T0 + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_touch(self) -> None:
        await self.store.put(_entry("abc"))
        later = T0 + timedelta(minutes=5)
        await self.store.touch("place_details:abc", later)
        await self.store.touch("place_details:abc", later)

        loaded = await self.store.get("place_details:abc")
        assert loaded.access_count == 2
        assert loaded.last_accessed_at == later
        assert self.client.zsets["test:accessed"]["place_details:abc"] == later.timestamp()

    @pytest.mark.asyncio
    async def test_touch_missing_key_creates_nothing(self) -> None:
        await self.store.touch("place_details:ghost", T0)
        assert self.client.hashes == {}
        assert "place_details:ghost" not in self.client.zsets.get("test:accessed", {})

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        await self.store.put(_entry("abc"))
        assert await self.store.delete("place_details:abc") is True
        assert await self.store.delete("place_details:abc") is False
        assert self.client.zsets["test:expires"] == {}
        assert self.client.zsets["test:accessed"] == {}

    @pytest.mark.asyncio
    async def test_delete_expired(self) -> None:
        await self.store.put(_entry("short", ttl=timedelta(minutes=30)))
        await self.store.put(_entry("long", ttl=timedelta(hours=24)))

        assert await self.store.delete_expired(T0 + timedelta(minutes=30)) == 1
        assert await self.store.get("place_details:short") is None
        assert await self.store.get("place_details:long") is not None
        assert await self.store.delete_expired(T0 + timedelta(minutes=30)) == 0

    @pytest.mark.asyncio
    async def test_delete_expired_counts_hashes_already_dropped_by_redis(self) -> None:
        await self.store.put(_entry("gone", ttl=timedelta(minutes=30)))
        # native expiry removed the hash but the index still lists it
        del self.client.hashes["test:entry:place_details:gone"]

        assert await self.store.delete_expired(T0 + timedelta(hours=1)) == 1
        assert self.client.zsets["test:accessed"] == {}

    @pytest.mark.asyncio
    async def test_evict_only_when_still_stale(self) -> None:
        await self.store.put(_entry("old"))
        await self.store.put(_entry("read"))
        await self.store.touch("place_details:read", T0 + timedelta(days=2))
        cutoff = T0 + timedelta(days=1)

        assert await self.store.evict("place_details:old", cutoff) is True
        assert await self.store.evict("place_details:read", cutoff) is False
        assert await self.store.evict("place_details:missing", cutoff) is False
        assert await self.store.get("place_details:old") is None
        assert await self.store.get("place_details:read") is not None


    @pytest.mark.asyncio
    async def test_least_recently_accessed(self) -> None:
        await self.store.put(_entry("b", now=T0 + timedelta(minutes=2)))
        await self.store.put(_entry("a", now=T0 + timedelta(minutes=1)))
        await self.store.put(_entry("c", now=T0 + timedelta(minutes=3)))

        stale = await self.store.least_recently_accessed(T0 + timedelta(minutes=3))
        assert [key for key, _ in stale] == ["place_details:a", "place_details:b"]
        assert all(size > 0 for _, size in stale)

    @pytest.mark.asyncio
    async def test_size_by_category(self) -> None:
        await self.store.put(_entry("a", category=CacheCategory.PHOTOS))
        await self.store.put(_entry("b", category=CacheCategory.PHOTOS))
        weather = _entry("c", category=CacheCategory.WEATHER)
        await self.store.put(weather)

        sizes = await self.store.size_by_category()
        assert sizes[CacheCategory.PHOTOS].count == 2
        assert sizes[CacheCategory.WEATHER].count == 1
        assert sizes[CacheCategory.WEATHER].total_bytes == weather.size

    @pytest.mark.asyncio
    async def test_size_skips_dropped_hashes(self) -> None:
        await self.store.put(_entry("a", category=CacheCategory.PHOTOS))
        await self.store.put(_entry("b", category=CacheCategory.PHOTOS))
        del self.client.hashes["test:entry:photos:a"]

        sizes = await self.store.size_by_category()
        assert sizes[CacheCategory.PHOTOS].count == 1

    @pytest.mark.asyncio
    async def test_close(self) -> None:
        await self.store.close()
        assert self.client.closed is True

    @pytest.mark.asyncio
    async def test_connection_errors_become_store_errors(self) -> None:
        store = RedisCacheStore(client=DownRedis())
        with pytest.raises(CacheStoreError):
            await store.get("place_details:abc")
        with pytest.raises(CacheStoreError):
            await store.put(_entry("abc"))

    @pytest.mark.asyncio
    async def test_cache_service_survives_redis_outage(self) -> None:
        cache = CacheService(RedisCacheStore(client=DownRedis()), clock=lambda: T0)
        await cache.set(CacheCategory.PLACE_DETAILS, "abc", {"name": "x"})
        assert await cache.get(CacheCategory.PLACE_DETAILS, "abc") is None

    @pytest.mark.asyncio
    async def test_cache_service_round_trip(self) -> None:
        now = {"value": T0}
        cache = CacheService(self.store, clock=lambda: now["value"])
        await cache.set("weather", "48.8,2.3", {"temp": 18})
        assert await cache.get("weather", "48.8,2.3") == {"temp": 18}

        now["value"] = T0 + timedelta(minutes=31)
        assert await cache.get("weather", "48.8,2.3") is None
        assert await cache.sweep_expired() == 1


class TestMemoryCacheStore:
    """Tests for MemoryCacheStore."""

    @pytest.mark.asyncio
    async def test_rejects_unserializable_payload(self) -> None:
        store = MemoryCacheStore()
        entry = _entry("abc")
        entry.payload = {"bad": {1, 2}}
        with pytest.raises(CacheStoreError):
            await store.put(entry)

    @pytest.mark.asyncio
    async def test_get_returns_copy(self) -> None:
        store = MemoryCacheStore()
        await store.put(_entry("abc"))
        loaded = await store.get("place_details:abc")
        loaded.access_count = 99
        assert (await store.get("place_details:abc")).access_count == 0

    @pytest.mark.asyncio
    async def test_least_recently_accessed_order(self) -> None:
        store = MemoryCacheStore()
        await store.put(_entry("late", now=T0 + timedelta(minutes=5)))
        await store.put(_entry("early", now=T0))
        stale = await store.least_recently_accessed(T0 + timedelta(hours=1))
        assert [key for key, _ in stale] == ["place_details:early", "place_details:late"]

    @pytest.mark.asyncio
    async def test_evict_respects_cutoff(self) -> None:
        store = MemoryCacheStore()
        await store.put(_entry("abc"))
        assert await store.evict("place_details:abc", T0) is False
        assert await store.evict("place_details:abc", T0 + timedelta(seconds=1)) is True
        assert len(store) == 0


class TestWritesDuringCleanup:
    """Entries written or read between a cleanup scan and its delete survive."""

    def setup_method(self) -> None:
        self.client = RacingRedis()
        self.store = RedisCacheStore(prefix="test:", client=self.client)
        self.now = {"value": T0}

    def _cache(self, **kwargs) -> CacheService:
        return CacheService(self.store, clock=lambda: self.now["value"], **kwargs)

    @pytest.mark.asyncio
    async def test_sweep_keeps_entry_rewritten_after_scan(self) -> None:
        cache = self._cache()
        await cache.set("weather", "48.8,2.3", {"temp": 18})
        self.now["value"] = T0 + timedelta(minutes=31)

        async def refresh() -> None:
            await cache.set("weather", "48.8,2.3", {"temp": 21})

        self.client.after_scan = refresh
        assert await cache.sweep_expired() == 0
        assert await cache.get("weather", "48.8,2.3") == {"temp": 21}

    @pytest.mark.asyncio
    async def test_sweep_still_removes_untouched_entries(self) -> None:
        cache = self._cache()
        await cache.set("weather", "48.8,2.3", {"temp": 18})
        await cache.set("weather", "51.5,-0.1", {"temp": 12})
        self.now["value"] = T0 + timedelta(minutes=31)

        async def refresh() -> None:
            await cache.set("weather", "48.8,2.3", {"temp": 21})

        self.client.after_scan = refresh
        assert await cache.sweep_expired() == 1
        assert await self.store.get("weather:51.5,-0.1") is None
        assert await self.store.get("weather:48.8,2.3") is not None

    @pytest.mark.asyncio
    async def test_reclaim_keeps_entry_read_after_scan(self) -> None:
        cache = self._cache(
            ttls={CacheCategory.PHOTOS: timedelta(days=30)},
            max_size_bytes=1,
            stale_after=timedelta(days=7),
        )
        await cache.set(CacheCategory.PHOTOS, "a", {"url": "https://example.com/a.jpg"})
        await cache.set(CacheCategory.PHOTOS, "b", {"url": "https://example.com/b.jpg"})
        self.now["value"] = T0 + timedelta(days=8)

        async def read() -> None:
            assert await cache.get(CacheCategory.PHOTOS, "a") is not None

        self.client.after_scan = read
        assert await cache.reclaim() == 1
        assert await self.store.get("photos:a") is not None
        assert await self.store.get("photos:b") is None
