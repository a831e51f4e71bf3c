# src/cache/result_cache.py - v2
"""TTL result cache over a shared key-value store.

Store layout, for namespace ``ns``:
    ``ns:entry:<key>``  serialized CacheEntry
    ``ns:tag:<tag>``    set of keys carrying the tag

A key joins a tag index only after its entry is written and leaves it
before its entry is deleted, so a live tagged entry is always reachable
from its index. Index lifetimes are extended to cover the longest entry
added to them; members whose entries expired are pruned the next time the
tag is invalidated.

Reads fail open: a store failure or corrupt payload counts as an error and
is reported as a miss, so a cache outage turns into recomputation rather
than a caller-facing failure. Writes are logged and counted but never raise
on store failure. Serialization errors always reach the caller.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from indexcore.cache import serialization
from indexcore.cache.models import MISSING, NO_EXPIRY, CacheEntry, CacheStats, StatsCounter
from indexcore.cache.stores.base_store import BaseKeyValueStore
from indexcore.core.errors import SerializationError, StoreError

logger = logging.getLogger(__name__)


class ResultCache:
    """Get/set/delete with TTL, glob and tag invalidation, and statistics.

    Args:
        store: Shared key-value store; the single source of truth.
        namespace: Prefix isolating this cache's keys inside the store.
        default_ttl_s: TTL used when ``set`` is called with ``ttl=None``.
        stats: Counter set to update; a private one is created if omitted.
        clock: Wall-clock source for entry expiry (injectable for tests).
    """

    def __init__(
        self,
        store: BaseKeyValueStore,
        namespace: str = "indexcore",
        default_ttl_s: float = 300.0,
        stats: StatsCounter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if default_ttl_s < 0:
            raise ValueError("default_ttl_s must be >= 0")
        self._store = store
        self._namespace = namespace
        self._default_ttl_s = default_ttl_s
        self._stats = stats if stats is not None else StatsCounter()
        self._clock = clock

    @property
    def store(self) -> BaseKeyValueStore:
        return self._store

    @property
    def namespace(self) -> str:
        return self._namespace

    async def get(self, key: str) -> Any:
        """Return the cached value, or MISSING.

        Expired entries are treated as missing and removed.
        """
        found = await self._read_entry(key)
        if found is None:
            self._stats.incr("misses")
            return MISSING

        entry, raw = found
        if entry.is_expired(self._clock()):
            self._stats.incr("misses")
            await self._drop_expired(key, raw)
            return MISSING

        try:
            value = serialization.decode(entry.value)
        except SerializationError as e:
            logger.warning("Undecodable cache value for %s: %s", key, e)
            self._stats.incr("errors")
            self._stats.incr("misses")
            return MISSING

        self._stats.incr("hits")
        return value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        tags: Iterable[str] = (),
    ) -> bool:
        """Store a value, overwriting any existing entry.

        Args:
            key: Cache key.
            value: Any value the serialization layer supports.
            ttl: Seconds to live. None uses the default TTL; NO_EXPIRY (0)
                stores an entry that never expires.
            tags: Invalidation tags attached to the entry.

        Returns:
            True when the entry was written, False on store failure.

        Raises:
            SerializationError: If the value cannot be encoded.
            ValueError: If ``ttl`` is negative.
        """
        ttl_s = self._default_ttl_s if ttl is None else ttl
        if ttl_s < 0:
            raise ValueError(f"ttl must be >= 0, got {ttl_s}")

        payload = serialization.encode(value)
        now = self._clock()
        tag_set = set(tags)
        entry = CacheEntry(
            key=key,
            value=payload,
            created_at=now,
            expires_at=None if ttl_s == NO_EXPIRY else now + ttl_s,
            tags=tag_set,
        )
        store_ttl = None if ttl_s == NO_EXPIRY else ttl_s

        raw = entry.model_dump_json().encode("utf-8")
        try:
            await self._store.set(self._entry_key(key), raw, store_ttl)
        except StoreError as e:
            logger.warning("Cache write failed for %s: %s", key, e)
            self._stats.incr("errors")
            return False

        try:
            for tag in sorted(tag_set):
                await self._store.add_to_set(self._tag_key(tag), key, store_ttl)
        except StoreError as e:
            logger.warning("Tag index write failed for %s, dropping entry: %s", key, e)
            self._stats.incr("errors")
            await self._discard(key, raw)
            return False

        self._stats.incr("sets")
        logger.debug("Cached %s (ttl=%s, tags=%s)", key, store_ttl, sorted(tag_set))
        return True

    async def delete(self, key: str) -> int:
        """Remove one entry and its tag index memberships. Returns 1 if it existed."""
        found = await self._read_entry(key)
        try:
            if found is not None:
                for tag in sorted(found[0].tags):
                    await self._store.remove_from_set(self._tag_key(tag), [key])
            removed = await self._store.delete(self._entry_key(key))
        except StoreError as e:
            logger.warning("Cache delete failed for %s: %s", key, e)
            self._stats.incr("errors")
            return 0
        if removed:
            self._stats.incr("deletes", removed)
        return removed

    async def exists(self, key: str) -> bool:
        """True if a live entry exists. Does not touch hit/miss counters."""
        found = await self._read_entry(key)
        return found is not None and not found[0].is_expired(self._clock())

    async def invalidate_pattern(self, pattern: str) -> int:
        """Remove every entry whose key matches a glob pattern.

        Matching keys are collected from an incremental store scan and
        deleted one at a time, so concurrent reads and writes proceed.

        Returns:
            Number of entries removed.
        """
        prefix = self._entry_key("")
        try:
            matches = [k async for k in self._store.scan(self._entry_key(pattern))]
        except StoreError as e:
            logger.warning("Pattern scan failed for %r: %s", pattern, e)
            self._stats.incr("errors")
            return 0

        removed = 0
        for store_key in matches:
            removed += await self.delete(store_key[len(prefix):])
        logger.info("Invalidated %d entries matching %r", removed, pattern)
        return removed

    async def invalidate_tag(self, tag: str) -> int:
        """Remove every entry currently carrying ``tag``.

        Only the members read here leave the index, and they leave it before
        their entries are deleted: a ``set`` racing with this call is either
        deleted too or keeps its index membership. Members whose entry
        expired, or was overwritten without the tag, are pruned.

        Returns:
            Number of entries removed.
        """
        tag_key = self._tag_key(tag)
        try:
            members = await self._store.set_members(tag_key)
            await self._store.remove_from_set(tag_key, members)
        except StoreError as e:
            logger.warning("Tag lookup failed for %r: %s", tag, e)
            self._stats.incr("errors")
            return 0

        removed = 0
        for key in sorted(members):
            entry: CacheEntry | None = None
            try:
                raw = await self._store.get(self._entry_key(key))
                if raw is None:
                    continue
                entry = CacheEntry.model_validate_json(raw)
                if tag not in entry.tags:
                    continue
                if await self._store.compare_and_delete(self._entry_key(key), raw):
                    removed += 1
                    self._stats.incr("deletes")
            except ValidationError as e:
                logger.warning("Corrupt cache entry %s left out of tag %r: %s", key, tag, e)
                self._stats.incr("errors")
            except StoreError as e:
                logger.warning("Tag invalidation could not remove %s: %s", key, e)
                self._stats.incr("errors")
                await self._reindex(tag_key, key, entry)

        logger.info("Invalidated %d entries tagged %r", removed, tag)
        return removed

    def stats(self) -> CacheStats:
        """Snapshot of hit/miss/set/delete/error counters."""
        return self._stats.snapshot()

    def reset_stats(self) -> None:
        self._stats.reset()

    async def _read_entry(self, key: str) -> tuple[CacheEntry, bytes] | None:
        try:
            raw = await self._store.get(self._entry_key(key))
        except StoreError as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            self._stats.incr("errors")
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw), raw
        except ValidationError as e:
            logger.warning("Corrupt cache entry %s: %s", key, e)
            self._stats.incr("errors")
            return None

    async def _discard(self, key: str, raw: bytes) -> None:
        """Remove an entry whose tag indexes could not be written."""
        try:
            await self._store.compare_and_delete(self._entry_key(key), raw)
        except StoreError as e:
            logger.error("Untagged entry %s stays until its TTL: %s", key, e)

    async def _reindex(self, tag_key: str, key: str, entry: CacheEntry | None) -> None:
        """Put a member back after its entry could not be removed."""
        ttl_s = None if entry is None else entry.remaining_ttl(self._clock())
        try:
            await self._store.add_to_set(tag_key, key, ttl_s)
        except StoreError as e:
            logger.error("Entry %s lost its membership in %s: %s", key, tag_key, e)

    async def _drop_expired(self, key: str, raw: bytes) -> None:
        # Only the exact expired payload is removed; a concurrent fresh set survives.
        try:
            await self._store.compare_and_delete(self._entry_key(key), raw)
        except StoreError as e:
            logger.debug("Lazy expiry of %s failed: %s", key, e)

    def _entry_key(self, key: str) -> str:
        return f"{self._namespace}:entry:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self._namespace}:tag:{tag}"
