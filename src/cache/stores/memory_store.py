# src/cache/stores/memory_store.py - v2
"""In-process key-value store (STORE_BACKEND=memory).

Shared by everything in one process; not shared across processes. Each
primitive runs under one short mutex section, which gives the same atomicity
the networked backends provide. The clock is injectable so tests can move
time forward without sleeping.
"""

from __future__ import annotations

import fnmatch
import threading
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterable

from indexcore.cache.stores.base_store import BaseKeyValueStore
from indexcore.core.errors import StoreError


@dataclass
class _Record:
    value: bytes | set[str]
    expires_at: float | None = None


class MemoryStore(BaseKeyValueStore):
    """Dictionary-backed store with lazy expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._data: dict[str, _Record] = {}

    async def get(self, key: str) -> bytes | None:
        with self._lock:
            record = self._live(key)
            if record is None:
                return None
            if not isinstance(record.value, bytes):
                raise StoreError(f"Key {key!r} holds a set, not a value")
            return record.value

    async def set(self, key: str, value: bytes, ttl_s: float | None = None) -> None:
        with self._lock:
            self._data[key] = _Record(value, self._deadline(ttl_s))

    async def set_if_absent(self, key: str, value: bytes, ttl_s: float | None = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = _Record(value, self._deadline(ttl_s))
            return True

    async def compare_and_delete(self, key: str, expected: bytes) -> bool:
        with self._lock:
            record = self._live(key)
            if record is None or record.value != expected:
                return False
            del self._data[key]
            return True

    async def compare_and_expire(self, key: str, expected: bytes, ttl_s: float) -> bool:
        with self._lock:
            record = self._live(key)
            if record is None or record.value != expected:
                return False
            record.expires_at = self._deadline(ttl_s)
            return True

    async def delete(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return 0
            del self._data[key]
            return 1

    async def scan(self, pattern: str) -> AsyncIterator[str]:
        with self._lock:
            snapshot = [
                key for key in list(self._data)
                if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
            ]
        for key in snapshot:
            yield key

    async def add_to_set(self, key: str, member: str, ttl_s: float | None = None) -> None:
        with self._lock:
            deadline = self._deadline(ttl_s)
            record = self._live(key)
            if record is None:
                self._data[key] = _Record({member}, deadline)
                return
            if not isinstance(record.value, set):
                raise StoreError(f"Key {key!r} holds a value, not a set")
            record.value.add(member)
            if deadline is None:
                record.expires_at = None
            elif record.expires_at is not None:
                record.expires_at = max(record.expires_at, deadline)

    async def remove_from_set(self, key: str, members: Iterable[str]) -> int:
        with self._lock:
            record = self._live(key)
            if record is None:
                return 0
            if not isinstance(record.value, set):
                raise StoreError(f"Key {key!r} holds a value, not a set")
            removed = 0
            for member in set(members):
                if member in record.value:
                    record.value.discard(member)
                    removed += 1
            if not record.value:
                del self._data[key]
            return removed

    async def set_members(self, key: str) -> set[str]:
        with self._lock:
            record = self._live(key)
            if record is None:
                return set()
            if not isinstance(record.value, set):
                raise StoreError(f"Key {key!r} holds a value, not a set")
            return set(record.value)

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for key in list(self._data) if self._live(key) is not None)

    def _live(self, key: str) -> _Record | None:
        """Return the record if present and unexpired; drop it otherwise. Caller holds the lock."""
        record = self._data.get(key)
        if record is None:
            return None
        if record.expires_at is not None and self._clock() >= record.expires_at:
            del self._data[key]
            return None
        return record

    def _deadline(self, ttl_s: float | None) -> float | None:
        if ttl_s is None:
            return None
        return self._clock() + ttl_s
