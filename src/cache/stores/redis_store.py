# src/cache/stores/redis_store.py - v3
"""Redis-based key-value store (STORE_BACKEND=redis).

Requires 'redis' package: pip install redis.
Suitable for distributed/multi-instance deployments: set-if-absent maps to
``SET NX PX`` and the compare-and-swap primitives run as Lua scripts, so
the server executes each of them atomically.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import AsyncIterator, Iterable, Iterator

from indexcore.cache.stores.base_store import BaseKeyValueStore
from indexcore.core.errors import StoreError

logger = logging.getLogger(__name__)

_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

_COMPARE_AND_EXPIRE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

# Extend-only set lifetime: an empty ARGV[2] means no expiry and always wins.
_ADD_TO_SET = """
local existed = redis.call('EXISTS', KEYS[1])
redis.call('SADD', KEYS[1], ARGV[1])
if ARGV[2] == '' then
    redis.call('PERSIST', KEYS[1])
    return 1
end
local ttl = tonumber(ARGV[2])
local current = redis.call('PTTL', KEYS[1])
if existed == 0 or (current >= 0 and current < ttl) then
    redis.call('PEXPIRE', KEYS[1], ttl)
end
return 1
"""

_SCAN_BATCH = 500


class RedisStore(BaseKeyValueStore):
    """Redis-backed store shared by every process pointing at the same server."""

    def __init__(self, redis_url: str, socket_timeout_s: float = 5.0) -> None:
        try:
            import redis
            import redis.asyncio as aioredis
        except ImportError as e:
            raise ImportError(
                "redis package required: pip install redis"
            ) from e

        self._redis_error: type[Exception] = redis.RedisError
        self._client = aioredis.Redis.from_url(
            redis_url, socket_timeout=socket_timeout_s
        )
        self._compare_and_delete = self._client.register_script(_COMPARE_AND_DELETE)
        self._compare_and_expire = self._client.register_script(_COMPARE_AND_EXPIRE)
        self._add_to_set = self._client.register_script(_ADD_TO_SET)

    async def get(self, key: str) -> bytes | None:
        with self._translate_errors("GET", key):
            return await self._client.get(key)

    async def set(self, key: str, value: bytes, ttl_s: float | None = None) -> None:
        with self._translate_errors("SET", key):
            await self._client.set(key, value, px=_to_ms(ttl_s))

    async def set_if_absent(self, key: str, value: bytes, ttl_s: float | None = None) -> bool:
        with self._translate_errors("SET NX", key):
            return bool(await self._client.set(key, value, nx=True, px=_to_ms(ttl_s)))

    async def compare_and_delete(self, key: str, expected: bytes) -> bool:
        with self._translate_errors("compare_and_delete", key):
            return bool(await self._compare_and_delete(keys=[key], args=[expected]))

    async def compare_and_expire(self, key: str, expected: bytes, ttl_s: float) -> bool:
        with self._translate_errors("compare_and_expire", key):
            return bool(
                await self._compare_and_expire(keys=[key], args=[expected, _to_ms(ttl_s)])
            )

    async def delete(self, key: str) -> int:
        with self._translate_errors("DEL", key):
            return int(await self._client.delete(key))

    async def scan(self, pattern: str) -> AsyncIterator[str]:
        # SCAN is incremental: other clients keep reading and writing meanwhile
        with self._translate_errors("SCAN", pattern):
            async for key in self._client.scan_iter(match=pattern, count=_SCAN_BATCH):
                yield _text(key)

    async def add_to_set(self, key: str, member: str, ttl_s: float | None = None) -> None:
        ttl_ms = _to_ms(ttl_s)
        with self._translate_errors("SADD", key):
            await self._add_to_set(keys=[key], args=[member, "" if ttl_ms is None else ttl_ms])

    async def remove_from_set(self, key: str, members: Iterable[str]) -> int:
        wanted = sorted(set(members))
        if not wanted:
            return 0
        with self._translate_errors("SREM", key):
            return int(await self._client.srem(key, *wanted))

    async def set_members(self, key: str) -> set[str]:
        with self._translate_errors("SMEMBERS", key):
            members = await self._client.smembers(key)
        return {_text(m) for m in members}

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self._client.aclose()

    @contextmanager
    def _translate_errors(self, operation: str, key: str) -> Iterator[None]:
        try:
            yield
        except self._redis_error as e:
            logger.debug("Redis %s failed for %s: %s", operation, key, e)
            raise StoreError(f"Redis {operation} failed for {key!r}: {e}") from e


def _to_ms(ttl_s: float | None) -> int | None:
    if ttl_s is None:
        return None
    return max(1, int(ttl_s * 1000))


def _text(raw: bytes | str) -> str:
    return raw.decode("utf-8") if isinstance(raw, bytes) else raw
