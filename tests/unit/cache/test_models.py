# tests/unit/cache/test_models.py - v1
"""Tests for cache/models.py: CacheEntry, CacheStats, StatsCounter, MISSING."""

from __future__ import annotations

import threading

import pytest

from indexcore.cache.models import MISSING, CacheEntry, CacheStats, StatsCounter


class TestCacheEntry:
    def test_never_expiring(self):
        entry = CacheEntry(key="k", value=b"v", created_at=100.0)
        assert entry.is_expired(now=10**12) is False
        assert entry.remaining_ttl(now=200.0) is None

    def test_expiry_boundary(self):
        entry = CacheEntry(key="k", value=b"v", created_at=100.0, expires_at=101.0)
        assert entry.is_expired(now=100.5) is False
        assert entry.is_expired(now=101.0) is True
        assert entry.remaining_ttl(now=100.25) == pytest.approx(0.75)

    def test_json_round_trip_with_binary_value(self):
        entry = CacheEntry(key="k", value=b"\x00\xff", created_at=1.0, tags={"a", "b"})
        restored = CacheEntry.model_validate_json(entry.model_dump_json())
        assert restored == entry


class TestCacheStats:
    def test_hit_rate_zero_without_lookups(self):
        assert CacheStats().hit_rate == 0.0

    def test_hit_rate(self):
        assert CacheStats(hits=3, misses=1).hit_rate == pytest.approx(0.75)

    def test_hit_rate_serialized(self):
        assert CacheStats(hits=1, misses=1).model_dump()["hit_rate"] == pytest.approx(0.5)


class TestStatsCounter:
    def test_incr_and_snapshot(self):
        counter = StatsCounter()
        counter.incr("hits")
        counter.incr("deletes", 3)
        snap = counter.snapshot()
        assert snap.hits == 1
        assert snap.deletes == 3
        assert snap.misses == 0

    def test_unknown_counter(self):
        with pytest.raises(KeyError):
            StatsCounter().incr("bogus")

    def test_reset(self):
        counter = StatsCounter()
        counter.incr("sets")
        counter.reset()
        assert counter.snapshot().sets == 0

    def test_isolated_instances(self):
        a, b = StatsCounter(), StatsCounter()
        a.incr("hits")
        assert b.snapshot().hits == 0

    def test_concurrent_increments(self):
        counter = StatsCounter()

        def work():
            for _ in range(1000):
                counter.incr("hits")

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert counter.snapshot().hits == 8000


class TestMissing:
    def test_singleton_and_falsy(self):
        assert MISSING is type(MISSING)()
        assert not MISSING
        assert repr(MISSING) == "MISSING"
