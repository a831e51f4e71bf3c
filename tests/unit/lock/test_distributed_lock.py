# tests/unit/lock/test_distributed_lock.py - v2
"""Tests for lock/distributed_lock.py."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from indexcore.core.errors import LockTimeout, LockUnavailable, StoreError
from indexcore.lock.distributed_lock import DistributedLock, LockRetryConfig, _compute_delay
from indexcore.logging.context import get_context, lock_context


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_acquire_returns_token(self, lock):
        token = await lock.acquire("res", lease_s=1)
        assert isinstance(token, str) and token
        assert await lock.is_locked("res") is True

    @pytest.mark.asyncio
    async def test_second_acquire_times_out(self, lock):
        assert await lock.acquire("res", lease_s=5) is not None
        assert await lock.acquire("res", lease_s=5, timeout_s=0.05) is None

    @pytest.mark.asyncio
    async def test_zero_timeout_tries_once(self, lock):
        await lock.acquire("res")
        assert await lock.acquire("res", timeout_s=0) is None

    @pytest.mark.asyncio
    async def test_release_then_reacquire(self, lock):
        token = await lock.acquire("res")
        assert await lock.release("res", token) is True
        assert await lock.is_locked("res") is False
        assert await lock.acquire("res", timeout_s=0) is not None

    @pytest.mark.asyncio
    async def test_independent_keys(self, lock):
        assert await lock.acquire("a", timeout_s=0) is not None
        assert await lock.acquire("b", timeout_s=0) is not None

    @pytest.mark.asyncio
    async def test_lease_expiry_lets_next_holder_in(self, lock, clock):
        assert await lock.acquire("k", lease_s=1) is not None
        clock.advance(1.1)
        assert await lock.acquire("k", lease_s=1, timeout_s=0) is not None

    @pytest.mark.asyncio
    async def test_waiter_acquires_after_release(self, lock):
        token = await lock.acquire("k")

        async def release_soon():
            await asyncio.sleep(0.02)
            await lock.release("k", token)

        releaser = asyncio.create_task(release_soon())
        assert await lock.acquire("k", timeout_s=1.0) is not None
        await releaser

    @pytest.mark.asyncio
    async def test_invalid_lease(self, lock):
        with pytest.raises(ValueError):
            await lock.acquire("k", lease_s=0)


class TestLogContext:
    @pytest.mark.asyncio
    async def test_lock_key_visible_while_acquiring(self, lock, memory_store):
        seen = []
        original = memory_store.set_if_absent

        async def spy(key, value, ttl_s=None):
            seen.append(get_context().lock_key)
            return await original(key, value, ttl_s)

        memory_store.set_if_absent = spy
        await lock.acquire("res")
        assert seen == ["res"]
        assert get_context().lock_key is None

    @pytest.mark.asyncio
    async def test_enclosing_lock_key_restored(self, lock):
        with lock_context("outer"):
            await lock.acquire("inner", timeout_s=0)
            assert get_context().lock_key == "outer"
            await lock.acquire("inner", timeout_s=0)
            assert get_context().lock_key == "outer"
        assert get_context().lock_key is None


class TestOwnership:
    @pytest.mark.asyncio
    async def test_release_with_wrong_token_is_not_owner(self, lock):
        token_a = await lock.acquire("k")
        assert await lock.release("k", "not-the-owner") is False
        assert await lock.is_locked("k") is True
        assert await lock.release("k", token_a) is True

    @pytest.mark.asyncio
    async def test_stale_holder_cannot_release_new_owner(self, lock, clock):
        token_a = await lock.acquire("k", lease_s=1)
        clock.advance(1.1)
        token_b = await lock.acquire("k", lease_s=5, timeout_s=0)
        assert token_b is not None
        assert await lock.release("k", token_a) is False
        assert await lock.is_locked("k") is True
        assert await lock.release("k", token_b) is True

    @pytest.mark.asyncio
    async def test_renew_extends_lease(self, lock, clock):
        token = await lock.acquire("k", lease_s=1)
        clock.advance(0.9)
        assert await lock.renew("k", token, lease_s=5) is True
        clock.advance(1.0)
        assert await lock.is_locked("k") is True

    @pytest.mark.asyncio
    async def test_renew_not_owner(self, lock):
        await lock.acquire("k")
        assert await lock.renew("k", "someone-else") is False

    @pytest.mark.asyncio
    async def test_renew_after_expiry_fails(self, lock, clock):
        token = await lock.acquire("k", lease_s=1)
        clock.advance(2)
        assert await lock.renew("k", token) is False


class TestHold:
    @pytest.mark.asyncio
    async def test_hold_releases_on_exit(self, lock):
        async with lock.hold("k") as token:
            assert token
            assert await lock.is_locked("k") is True
        assert await lock.is_locked("k") is False

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, lock):
        with pytest.raises(RuntimeError):
            async with lock.hold("k"):
                raise RuntimeError("boom")
        assert await lock.is_locked("k") is False

    @pytest.mark.asyncio
    async def test_hold_timeout(self, lock):
        await lock.acquire("k")
        with pytest.raises(LockTimeout):
            async with lock.hold("k", timeout_s=0.01):
                pass


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_acquire_surfaces_lock_unavailable(self, fast_retry):
        store = AsyncMock()
        store.set_if_absent.side_effect = StoreError("down")
        lock = DistributedLock(store, default_timeout_s=5.0, retry=fast_retry)
        with pytest.raises(LockUnavailable):
            await lock.acquire("k")
        assert store.set_if_absent.await_count == fast_retry.max_store_retries + 1

    @pytest.mark.asyncio
    async def test_acquire_recovers_from_transient_failure(self, fast_retry):
        store = AsyncMock()
        store.set_if_absent.side_effect = [StoreError("blip"), True]
        lock = DistributedLock(store, retry=fast_retry)
        assert await lock.acquire("k") is not None

    @pytest.mark.asyncio
    async def test_release_surfaces_lock_unavailable(self, fast_retry):
        store = AsyncMock()
        store.compare_and_delete.side_effect = StoreError("down")
        lock = DistributedLock(store, retry=fast_retry)
        with pytest.raises(LockUnavailable):
            await lock.release("k", "token")


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_acquire_leaves_no_record(self, memory_store, fast_retry):
        landed = asyncio.Event()
        original = memory_store.set_if_absent

        async def slow_set_if_absent(key, value, ttl_s=None):
            result = await original(key, value, ttl_s)
            landed.set()
            await asyncio.sleep(10)
            return result

        memory_store.set_if_absent = slow_set_if_absent
        lock = DistributedLock(memory_store, namespace="test", retry=fast_retry)
        task = asyncio.create_task(lock.acquire("k", timeout_s=5))
        await landed.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await memory_store.get("test:lock:k") is None


class TestBackoff:
    def test_delay_grows_and_caps(self):
        config = LockRetryConfig(base_delay_s=0.1, max_delay_s=0.5, jitter=False)
        assert _compute_delay(config, 0) == pytest.approx(0.1)
        assert _compute_delay(config, 1) == pytest.approx(0.2)
        assert _compute_delay(config, 10) == pytest.approx(0.5)

    def test_jitter_stays_within_cap(self):
        config = LockRetryConfig(base_delay_s=0.4, max_delay_s=0.5)
        for attempt in range(5):
            assert 0 < _compute_delay(config, attempt) <= 0.5
