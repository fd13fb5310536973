"""Cache entry types, categories and TTL table.

A cache key is always ``{category}:{identifier}``. The identifier is any
string built by the caller, including composite values such as
``"48.8566,2.3522,5000"``.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping


class CacheCategory(str, Enum):
    """Kinds of upstream payload the cache stores.

    The category decides how long an entry lives.
    """

    PLACE_DETAILS = "place_details"
    SEARCH_RESULTS = "search_results"
    PHOTOS = "photos"
    NEARBY_PLACES = "nearby_places"
    WEATHER = "weather"
    POPULAR_TIMES = "popular_times"


DEFAULT_TTLS: Mapping[CacheCategory, timedelta] = {
    CacheCategory.PLACE_DETAILS: timedelta(hours=24),
    CacheCategory.SEARCH_RESULTS: timedelta(hours=6),
    CacheCategory.PHOTOS: timedelta(days=7),
    CacheCategory.NEARBY_PLACES: timedelta(hours=12),
    CacheCategory.WEATHER: timedelta(minutes=30),
    CacheCategory.POPULAR_TIMES: timedelta(hours=6),
}


class InvalidCacheCategoryError(ValueError):
    """Raised for a category outside :class:`CacheCategory`."""


def parse_category(category: "CacheCategory | str") -> CacheCategory:
    """Coerce a category name into a :class:`CacheCategory`.

    Raises:
        InvalidCacheCategoryError: If the value is not a known category.
    """
    if isinstance(category, CacheCategory):
        return category
    try:
        return CacheCategory(category)
    except ValueError:
        raise InvalidCacheCategoryError(f"Unknown cache category: {category!r}") from None


def build_key(category: CacheCategory, identifier: str) -> str:
    """Generate the storage key for a category/identifier pair.

    Example:
        >>> build_key(CacheCategory.WEATHER, "48.8,2.3")
        'weather:48.8,2.3'
    """
    return f"{category.value}:{identifier}"


def payload_size(payload: Any) -> int:
    """Serialized byte length of a payload, used for size accounting."""
    return len(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry:
    """A single cached upstream response."""

    key: str
    category: CacheCategory
    payload: Any
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    access_count: int = 0
    size: int = 0

    @classmethod
    def create(
        cls,
        category: CacheCategory,
        identifier: str,
        payload: Any,
        ttl: timedelta,
        now: datetime,
    ) -> "CacheEntry":
        """Build a fresh entry; replaces any previous entry for the key."""
        return cls(
            key=build_key(category, identifier),
            category=category,
            payload=payload,
            created_at=now,
            expires_at=now + ttl,
            last_accessed_at=now,
            access_count=0,
            size=payload_size(payload),
        )

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass
class CategorySize:
    """Entry count and payload bytes held for one category."""

    count: int = 0
    total_bytes: int = 0


@dataclass
class CacheStatistics:
    """Process-lifetime hit/miss counters for one cache service.

    Updates never await, so within a single event loop each one is atomic.
    """

    hits: int = 0
    misses: int = 0
    total_requests: int = 0
    up_since: datetime = field(default_factory=utcnow)

    def record_request(self) -> None:
        self.total_requests += 1

    def record_hit(self) -> None:
        self.hits += 1

    def record_miss(self) -> None:
        self.misses += 1

    def reset(self, now: datetime) -> None:
        self.hits = 0
        self.misses = 0
        self.total_requests = 0
        self.up_since = now

    def snapshot(self, now: datetime) -> dict[str, Any]:
        """Return the counters with derived hit rate and uptime.

        ``hit_rate`` is a percentage rounded to two decimals.
        """
        hit_rate = 0.0
        if self.total_requests > 0:
            hit_rate = round(self.hits / self.total_requests * 100, 2)
        return {
            "hits": self.hits,
            "misses": self.misses,
            "total_requests": self.total_requests,
            "hit_rate": hit_rate,
            "up_since": self.up_since,
            "uptime_minutes": int((now - self.up_since).total_seconds() // 60),
        }
