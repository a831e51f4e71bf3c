# src/lock/distributed_lock.py - v2
"""Distributed mutual exclusion over the shared key-value store.

A lock record is ``lock_key -> owner token`` written with set-if-absent and
a store-side expiry (the lease). Release and renewal compare the token and
act in one atomic store call, so a holder whose lease already expired can
never release or extend the record of the next owner. A holder that dies
without releasing blocks the key only until its lease runs out.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from indexcore.cache.stores.base_store import BaseKeyValueStore
from indexcore.core.errors import LockTimeout, LockUnavailable, StoreError
from indexcore.logging.context import lock_context

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class LockRetryConfig:
    """Backoff between contended acquire attempts and store-failure retries."""

    base_delay_s: float = 0.05
    max_delay_s: float = 1.0
    backoff_factor: float = 2.0
    jitter: bool = True
    max_store_retries: int = 3


def _compute_delay(config: LockRetryConfig, attempt: int) -> float:
    """Compute delay for a given attempt (0-based), capped at max_delay_s."""
    delay = min(config.max_delay_s, config.base_delay_s * (config.backoff_factor ** attempt))
    if config.jitter:
        delay *= 0.5 + random.random()  # noqa: S311
    return min(delay, config.max_delay_s)


class DistributedLock:
    """Lease-based lock with ownership tokens.

    Args:
        store: Shared key-value store holding the lock records.
        namespace: Prefix isolating lock records inside the store.
        default_lease_s: Lease used when ``acquire`` gets ``lease_s=None``.
        default_timeout_s: Acquire timeout used when ``timeout_s=None``.
        retry: Backoff and store-retry configuration.
    """

    def __init__(
        self,
        store: BaseKeyValueStore,
        namespace: str = "indexcore",
        default_lease_s: float = 30.0,
        default_timeout_s: float = 10.0,
        retry: LockRetryConfig | None = None,
    ) -> None:
        if default_lease_s <= 0:
            raise ValueError("default_lease_s must be > 0")
        if default_timeout_s < 0:
            raise ValueError("default_timeout_s must be >= 0")
        self._store = store
        self._namespace = namespace
        self._default_lease_s = default_lease_s
        self._default_timeout_s = default_timeout_s
        self._retry = retry or LockRetryConfig()

    async def acquire(
        self,
        lock_key: str,
        lease_s: float | None = None,
        timeout_s: float | None = None,
    ) -> str | None:
        """Acquire the lock, retrying with backoff until the timeout.

        Args:
            lock_key: Logical resource name.
            lease_s: Lease length; the record expires on its own after it.
            timeout_s: Give up after this many seconds. 0 tries exactly once.

        Returns:
            The owner token on success, None when the timeout elapsed
            while another holder kept the lock.

        Raises:
            LockUnavailable: If the store kept failing past the retry budget.
        """
        lease = self._default_lease_s if lease_s is None else lease_s
        timeout = self._default_timeout_s if timeout_s is None else timeout_s
        if lease <= 0:
            raise ValueError("lease_s must be > 0")

        record_key = self._record_key(lock_key)
        token = uuid.uuid4().hex
        deadline = time.monotonic() + timeout
        attempt = 0
        store_failures = 0
        with lock_context(lock_key):
            while True:
                try:
                    acquired = await self._try_create(record_key, token, lease)
                except StoreError as e:
                    store_failures += 1
                    if store_failures > self._retry.max_store_retries:
                        raise LockUnavailable(lock_key, store_failures, e) from e
                    logger.warning(
                        "Lock '%s' store failure (attempt %d/%d): %s",
                        lock_key, store_failures, self._retry.max_store_retries, e,
                    )
                else:
                    if acquired:
                        logger.debug("Acquired lock '%s' (lease=%.2fs)", lock_key, lease)
                        return token

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.debug("Timed out acquiring lock '%s' after %.2fs", lock_key, timeout)
                    return None
                await asyncio.sleep(min(_compute_delay(self._retry, attempt), remaining))
                attempt += 1

    async def release(self, lock_key: str, token: str) -> bool:
        """Delete the record only if ``token`` still owns it.

        Returns:
            True on release, False when the caller is not the owner
            (lease expired and possibly reassigned). NotOwner is logged.

        Raises:
            LockUnavailable: If the store kept failing past the retry budget.
        """
        released = await self._with_store_retries(
            lock_key,
            lambda: self._store.compare_and_delete(self._record_key(lock_key), token.encode()),
        )
        if released:
            logger.debug("Released lock '%s'", lock_key)
        else:
            logger.warning("Release of lock '%s' refused: token is not the current owner", lock_key)
        return released

    async def renew(self, lock_key: str, token: str, lease_s: float | None = None) -> bool:
        """Extend the lease of a held lock.

        Returns:
            True if extended, False when ``token`` is not the current owner.

        Raises:
            LockUnavailable: If the store kept failing past the retry budget.
        """
        lease = self._default_lease_s if lease_s is None else lease_s
        if lease <= 0:
            raise ValueError("lease_s must be > 0")
        renewed = await self._with_store_retries(
            lock_key,
            lambda: self._store.compare_and_expire(
                self._record_key(lock_key), token.encode(), lease
            ),
        )
        if not renewed:
            logger.warning("Renewal of lock '%s' refused: token is not the current owner", lock_key)
        return renewed

    async def is_locked(self, lock_key: str) -> bool:
        """True if a live record exists for ``lock_key``."""
        raw = await self._with_store_retries(
            lock_key, lambda: self._store.get(self._record_key(lock_key))
        )
        return raw is not None

    @asynccontextmanager
    async def hold(
        self,
        lock_key: str,
        lease_s: float | None = None,
        timeout_s: float | None = None,
    ) -> AsyncIterator[str]:
        """Hold the lock for the duration of a block, yielding the token.

        Raises:
            LockTimeout: If the lock was not acquired in time.
            LockUnavailable: If the store kept failing.
        """
        token = await self.acquire(lock_key, lease_s=lease_s, timeout_s=timeout_s)
        if token is None:
            raise LockTimeout(
                lock_key, self._default_timeout_s if timeout_s is None else timeout_s
            )
        try:
            yield token
        finally:
            try:
                await self.release(lock_key, token)
            except LockUnavailable as e:
                logger.error("Lock '%s' left to expire after release failure: %s", lock_key, e)

    async def _try_create(self, record_key: str, token: str, lease: float) -> bool:
        """One set-if-absent attempt that never leaves an orphan on cancellation."""
        try:
            return await self._store.set_if_absent(record_key, token.encode(), lease)
        except asyncio.CancelledError:
            # The write may have landed before the cancellation was delivered.
            try:
                await asyncio.shield(self._store.compare_and_delete(record_key, token.encode()))
            except StoreError as e:
                logger.warning("Cleanup of cancelled acquire on %s failed: %s", record_key, e)
            raise

    async def _with_store_retries(
        self, lock_key: str, operation: Callable[[], Awaitable[T]]
    ) -> T:
        failures = 0
        while True:
            try:
                return await operation()
            except StoreError as e:
                failures += 1
                if failures > self._retry.max_store_retries:
                    raise LockUnavailable(lock_key, failures, e) from e
                delay = _compute_delay(self._retry, failures - 1)
                logger.warning(
                    "Lock '%s' store failure (attempt %d/%d), retrying in %.2fs",
                    lock_key, failures, self._retry.max_store_retries, delay,
                )
                await asyncio.sleep(delay)

    def _record_key(self, lock_key: str) -> str:
        return f"{self._namespace}:lock:{lock_key}"
