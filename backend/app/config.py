"""Application settings loaded from the environment.

Values come from process environment variables, with a ``.env`` file in the
working directory loaded first when present.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

from app.services.cache import CacheCategory


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _ttl_overrides() -> dict[CacheCategory, timedelta]:
    """Read ``CACHE_TTL_<CATEGORY>`` overrides, in seconds."""
    overrides = {}
    for category in CacheCategory:
        env_name = f"CACHE_TTL_{category.value.upper()}"
        if os.getenv(env_name):
            overrides[category] = timedelta(seconds=_env_int(env_name, 0))
    return overrides


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the API server and its cache."""

    redis_url: str = "redis://localhost:6379"
    cache_backend: str = "redis"
    cache_key_prefix: str = "cache:"
    cache_sweep_interval: timedelta = timedelta(hours=1)
    cache_reclaim_interval: timedelta = timedelta(hours=6)
    cache_max_size_bytes: int = 100 * 1024 * 1024
    cache_stale_after: timedelta = timedelta(days=7)
    cache_strict_categories: bool = False
    cache_ttls: dict[CacheCategory, timedelta] = field(default_factory=dict)
    google_places_api_key: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        backend = os.getenv("CACHE_BACKEND", "redis").strip().lower()
        if backend not in ("redis", "memory"):
            raise ValueError(f"CACHE_BACKEND must be 'redis' or 'memory', got {backend!r}")

        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            cache_backend=backend,
            cache_key_prefix=os.getenv("CACHE_KEY_PREFIX", "cache:"),
            cache_sweep_interval=timedelta(seconds=_env_int("CACHE_SWEEP_INTERVAL_SECONDS", 3600)),
            cache_reclaim_interval=timedelta(seconds=_env_int("CACHE_RECLAIM_INTERVAL_SECONDS", 21600)),
            cache_max_size_bytes=_env_int("CACHE_MAX_SIZE_BYTES", 100 * 1024 * 1024),
            cache_stale_after=timedelta(days=_env_int("CACHE_STALE_AFTER_DAYS", 7)),
            cache_strict_categories=_env_bool("CACHE_STRICT_CATEGORIES", False),
            cache_ttls=_ttl_overrides(),
            google_places_api_key=os.getenv("GOOGLE_PLACES_API_KEY") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
