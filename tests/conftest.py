# tests/conftest.py - v2
"""Shared test fixtures for all unit and integration tests.

Provides a controllable clock, in-memory stores, caches and locks wired to
that clock, and small helpers. No external services: Redis is mocked.
"""

from __future__ import annotations

import pytest

from indexcore.cache.models import StatsCounter
from indexcore.cache.result_cache import ResultCache
from indexcore.cache.stores.memory_store import MemoryStore
from indexcore.lock.distributed_lock import DistributedLock, LockRetryConfig


class FakeClock:
    """Manually advanced clock usable wherever a ``() -> float`` clock is accepted."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# === FIXTURES: Time and stores ===


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock: FakeClock) -> MemoryStore:
    """In-memory store driven by the fake clock."""
    return MemoryStore(clock=clock)


@pytest.fixture
def stats() -> StatsCounter:
    return StatsCounter()


@pytest.fixture
def cache(memory_store: MemoryStore, clock: FakeClock, stats: StatsCounter) -> ResultCache:
    """ResultCache over the fake-clock memory store, 60s default TTL."""
    return ResultCache(memory_store, namespace="test", default_ttl_s=60.0, stats=stats, clock=clock)


@pytest.fixture
def fast_retry() -> LockRetryConfig:
    """Tiny backoff so contention tests finish quickly."""
    return LockRetryConfig(base_delay_s=0.001, max_delay_s=0.01, jitter=False, max_store_retries=2)


@pytest.fixture
def lock(memory_store: MemoryStore, fast_retry: LockRetryConfig) -> DistributedLock:
    return DistributedLock(
        memory_store, namespace="test", default_lease_s=5.0, default_timeout_s=0.5, retry=fast_retry
    )
