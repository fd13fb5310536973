"""Shared fixtures for unit tests."""

from datetime import datetime, timedelta, timezone

import pytest

from app.services.cache import CacheService, MemoryCacheStore


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest.fixture
def cache(store: MemoryCacheStore, clock: FakeClock) -> CacheService:
    return CacheService(store, clock=clock)
