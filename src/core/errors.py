# src/core/errors.py - v1
"""Error taxonomy shared by the cache, lock, memoizer and search layers.

Encoding and serialization errors are caller mistakes and are never retried.
Store errors are transient; each layer decides whether to fail open
(cache reads and writes) or to surface them (lock operations).
"""

from __future__ import annotations


class IndexCoreError(Exception):
    """Base class for all indexcore errors."""


class EncodingError(IndexCoreError):
    """An argument could not be canonicalized into a cache key."""


class SerializationError(IndexCoreError):
    """A value could not be encoded to, or decoded from, bytes."""


class StoreError(IndexCoreError):
    """The shared key-value store failed (connection, I/O, protocol)."""


class LockUnavailable(IndexCoreError):
    """Lock operation failed after exhausting store retries."""

    def __init__(self, lock_key: str, attempts: int, last_error: Exception | None = None):
        self.lock_key = lock_key
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Lock '{lock_key}' unavailable after {attempts} attempts: {last_error}"
        )


class LockTimeout(IndexCoreError):
    """Lock could not be acquired before the acquire timeout elapsed."""

    def __init__(self, lock_key: str, timeout_s: float):
        self.lock_key = lock_key
        self.timeout_s = timeout_s
        super().__init__(f"Lock '{lock_key}' not acquired within {timeout_s:.2f}s")


class ComputationTimeout(IndexCoreError):
    """Waiting for a peer to populate the cache gave up. Safe to retry."""

    def __init__(self, key: str, waited_s: float):
        self.key = key
        self.waited_s = waited_s
        super().__init__(
            f"No value for '{key}' appeared within {waited_s:.2f}s while a peer held the lock"
        )
