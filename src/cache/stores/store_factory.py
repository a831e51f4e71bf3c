# src/cache/stores/store_factory.py - v1
"""Factory for shared key-value store instantiation."""

from __future__ import annotations

from indexcore.cache.stores.base_store import BaseKeyValueStore
from indexcore.config.settings import Settings


def create_store(settings: Settings | None = None) -> BaseKeyValueStore:
    """Instantiate the configured store backend.

    Args:
        settings: Application settings. Defaults to the in-memory backend.

    Returns:
        Configured BaseKeyValueStore implementation.
    """
    backend = "memory" if settings is None else settings.store_backend

    if backend == "memory":
        from indexcore.cache.stores.memory_store import MemoryStore
        return MemoryStore()

    if backend == "sqlite":
        from indexcore.cache.stores.sqlite_store import SqliteStore
        return SqliteStore(
            db_path=settings.store_sqlite_path,
            timeout_s=settings.store_timeout_s,
        )

    if backend == "redis":
        from indexcore.cache.stores.redis_store import RedisStore
        if not settings.store_redis_url:
            raise ValueError(
                "STORE_REDIS_URL must be set when STORE_BACKEND=redis"
            )
        return RedisStore(
            redis_url=settings.store_redis_url,
            socket_timeout_s=settings.store_timeout_s,
        )

    raise ValueError(f"Unsupported store backend: {backend!r}")
