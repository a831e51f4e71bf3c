# src/memo/memoizer.py - v2
"""Single-flight memoization: ResultCache + DistributedLock around a computation.

Call flow for one invocation:
  1. Derive the key (KeyCodec by default).
  2. Cache hit -> return, no lock taken.
  3. Miss -> acquire the per-key lock.
     - Acquired: check the cache again, compute on a second miss, store,
       release in all cases, return.
     - Timed out: apply the configured FallbackPolicy.

Exceptions raised by the computation reach the caller and nothing is
cached. Lock failures (LockUnavailable) are never treated as exclusivity.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from indexcore.cache.key_codec import build_key, function_identity
from indexcore.cache.models import MISSING
from indexcore.cache.result_cache import ResultCache
from indexcore.core.errors import ComputationTimeout, LockUnavailable
from indexcore.lock.distributed_lock import DistributedLock
from indexcore.logging.context import operation_context

logger = logging.getLogger(__name__)

T = TypeVar("T")
KeyBuilder = Callable[..., str]


class FallbackPolicy(str, Enum):
    """What a caller does when the per-key lock stays held past the acquire timeout."""

    WAIT_FOR_PEER = "wait_for_peer"
    """Poll the cache until the holder publishes, then raise ComputationTimeout."""

    COMPUTE_ANYWAY = "compute_anyway"
    """Run the computation without caching; duplicate work is accepted."""


class SingleFlightMemoizer:
    """Wraps computations so concurrent identical calls compute at most once.

    Args:
        cache: Result cache for computed values.
        lock: Distributed lock guarding recomputation per key.
        fallback: Policy applied when the lock cannot be acquired in time.
        lease_s: Lease for the per-key lock; should exceed the computation time.
        acquire_timeout_s: How long to contend for the lock.
        peer_wait_s: WAIT_FOR_PEER only: how long to poll the cache.
        poll_interval_s: WAIT_FOR_PEER only: delay between cache polls.
        key_prefix: Default human-readable key prefix.
    """

    def __init__(
        self,
        cache: ResultCache,
        lock: DistributedLock,
        fallback: FallbackPolicy | str,
        lease_s: float = 30.0,
        acquire_timeout_s: float = 10.0,
        peer_wait_s: float = 30.0,
        poll_interval_s: float = 0.1,
        key_prefix: str = "memo",
    ) -> None:
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        self._cache = cache
        self._lock = lock
        self._fallback = FallbackPolicy(fallback)
        self._lease_s = lease_s
        self._acquire_timeout_s = acquire_timeout_s
        self._peer_wait_s = peer_wait_s
        self._poll_interval_s = poll_interval_s
        self._key_prefix = key_prefix

    @property
    def fallback(self) -> FallbackPolicy:
        return self._fallback

    def wrap(
        self,
        computation: Callable[..., Awaitable[T]] | Callable[..., T],
        key_builder: KeyBuilder | None = None,
        ttl: float | None = None,
        tags: Iterable[str] | None = None,
        key_prefix: str | None = None,
    ) -> Callable[..., Awaitable[T]]:
        """Return an async callable with single-flight caching attached.

        Args:
            computation: Async or sync callable, including objects with an
                async ``__call__``. Sync callables run in a worker thread; an
                awaitable they return is awaited.
            key_builder: ``f(*args, **kwargs) -> key``. Defaults to KeyCodec
                over the prefix, the function identity and the arguments.
            ttl: Cache TTL for results (None = cache default, 0 = never expire).
            tags: Invalidation tags attached to every stored result.
            key_prefix: Overrides the memoizer's default prefix.

        The returned callable also exposes ``cache_key(*args, **kwargs)``
        and ``invalidate(*args, **kwargs)``.
        """
        prefix = key_prefix or self._key_prefix
        identity = function_identity(computation)
        tag_list = list(tags or ())

        def derive_key(*args: Any, **kwargs: Any) -> str:
            if key_builder is not None:
                return key_builder(*args, **kwargs)
            return build_key(prefix, identity, args, kwargs)

        if _is_async_callable(computation):
            run = computation
        else:
            async def run(*args: Any, **kwargs: Any) -> Any:
                result = await asyncio.to_thread(computation, *args, **kwargs)
                if inspect.isawaitable(result):
                    return await result
                return result

        @functools.wraps(computation)
        async def memoized(*args: Any, **kwargs: Any) -> T:
            key = derive_key(*args, **kwargs)
            with operation_context("memoize", key):
                return await self._call(key, run, args, kwargs, ttl, tag_list)

        async def invalidate(*args: Any, **kwargs: Any) -> int:
            return await self._cache.delete(derive_key(*args, **kwargs))

        memoized.cache_key = derive_key  # type: ignore[attr-defined]
        memoized.invalidate = invalidate  # type: ignore[attr-defined]
        return memoized

    def memoize(
        self,
        key_builder: KeyBuilder | None = None,
        ttl: float | None = None,
        tags: Iterable[str] | None = None,
        key_prefix: str | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Awaitable[Any]]]:
        """Decorator form of wrap()."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Awaitable[Any]]:
            return self.wrap(fn, key_builder=key_builder, ttl=ttl, tags=tags, key_prefix=key_prefix)

        return decorator

    async def _call(
        self,
        key: str,
        run: Callable[..., Awaitable[Any]],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        ttl: float | None,
        tags: list[str],
    ) -> Any:
        cached = await self._cache.get(key)
        if cached is not MISSING:
            return cached

        token = await self._lock.acquire(
            key, lease_s=self._lease_s, timeout_s=self._acquire_timeout_s
        )
        if token is None:
            return await self._fall_back(key, run, args, kwargs)

        try:
            # A peer may have published between the first check and the acquire.
            cached = await self._cache.get(key)
            if cached is not MISSING:
                return cached

            started = time.monotonic()
            value = await run(*args, **kwargs)
            elapsed = time.monotonic() - started
            if elapsed > self._lease_s:
                logger.warning(
                    "Computation for %s took %.2fs, longer than its %.2fs lease",
                    key, elapsed, self._lease_s,
                )
            await self._cache.set(key, value, ttl=ttl, tags=tags)
            return value
        finally:
            try:
                await self._lock.release(key, token)
            except LockUnavailable as e:
                logger.error("Lock for %s left to expire after release failure: %s", key, e)

    async def _fall_back(
        self,
        key: str,
        run: Callable[..., Awaitable[Any]],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Any:
        if self._fallback is FallbackPolicy.COMPUTE_ANYWAY:
            logger.info("Lock busy for %s, computing without cache", key)
            return await run(*args, **kwargs)

        logger.debug("Lock busy for %s, waiting up to %.2fs for peer", key, self._peer_wait_s)
        deadline = time.monotonic() + self._peer_wait_s
        while True:
            # exists() leaves hit/miss counters alone; only the final read is counted
            if await self._cache.exists(key):
                cached = await self._cache.get(key)
                if cached is not MISSING:
                    return cached
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ComputationTimeout(key, self._peer_wait_s)
            await asyncio.sleep(min(self._poll_interval_s, remaining))


def _is_async_callable(fn: Callable[..., Any]) -> bool:
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)
