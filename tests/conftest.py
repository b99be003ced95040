"""Shared fixtures for the relay test suite."""

import pytest

from relay.app.core.cache import InMemoryCache, reset_cache
from relay.app.core.config import settings
from relay.app.providers.factory import reset_provider_registry
from relay.app.ratelimit.models import RateLimitEntry
from relay.app.ratelimit.store import RateLimitStore, reset_store

NOW = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when the code under test sleeps."""

    def __init__(self, start: int = NOW):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> int:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += round(seconds * 1000)


@pytest.fixture(autouse=True)
def isolated_state(monkeypatch):
    """Keep every test on a fresh in-memory backend and fresh singletons."""
    monkeypatch.setattr(settings, "rate_limit_backend", "memory")
    monkeypatch.setattr(settings, "admin_token", "")
    reset_cache()
    reset_store()
    reset_provider_registry()
    yield
    reset_cache()
    reset_store()
    reset_provider_registry()


@pytest.fixture
def backend():
    return InMemoryCache()


@pytest.fixture
def store(backend):
    return RateLimitStore(backend)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_entry():
    """Factory for tracked entries with a one-minute window ending at reset_at."""
    def _make(remaining: int, reset_at: int, limit: int = 60) -> RateLimitEntry:
        return RateLimitEntry(
            limit=limit,
            remaining=remaining,
            reset_at=reset_at,
            window_start=reset_at - 60_000,
            last_updated=reset_at - 60_000,
        )
    return _make
