# src/api/facade.py - v2
"""Public facade: build the store, cache, lock and memoizer from Settings.

Usage:
    core = IndexCore.from_settings(load_settings())

    @core.memoize(ttl=60, tags=["courses"])
    async def load_course(course_id: int) -> dict: ...

    searcher = core.searcher([LexicalStrategy(), VectorStrategy()])
    hits = await searcher.search(SearchRequest(query="b-tree", strategy_weights={...}))
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable

from indexcore.cache.models import StatsCounter
from indexcore.cache.result_cache import ResultCache
from indexcore.cache.stores.base_store import BaseKeyValueStore
from indexcore.cache.stores.store_factory import create_store
from indexcore.config.settings import Settings
from indexcore.lock.distributed_lock import DistributedLock, LockRetryConfig
from indexcore.memo.memoizer import FallbackPolicy, KeyBuilder, SingleFlightMemoizer
from indexcore.search.base_strategy import BaseSearchStrategy
from indexcore.search.hybrid import HybridSearcher

logger = logging.getLogger(__name__)


class IndexCore:
    """Wired-together cache, lock, memoizer and search components.

    Args:
        store: Shared key-value store used by every component.
        settings: Configuration; defaults are used when omitted.
        stats: Counter set for the cache; a private one is created if omitted.
    """

    def __init__(
        self,
        store: BaseKeyValueStore,
        settings: Settings | None = None,
        stats: StatsCounter | None = None,
    ) -> None:
        self._settings = settings or Settings(_env_file=None)  # type: ignore[call-arg]
        s = self._settings
        self._store = store
        self.cache = ResultCache(
            store,
            namespace=s.cache_namespace,
            default_ttl_s=s.cache_default_ttl_s,
            stats=stats,
        )
        self.lock = DistributedLock(
            store,
            namespace=s.cache_namespace,
            default_lease_s=s.lock_lease_s,
            default_timeout_s=s.lock_acquire_timeout_s,
            retry=LockRetryConfig(
                base_delay_s=s.lock_retry_base_delay_s,
                max_delay_s=s.lock_retry_max_delay_s,
                max_store_retries=s.lock_store_max_retries,
            ),
        )
        self.memoizer = SingleFlightMemoizer(
            self.cache,
            self.lock,
            fallback=FallbackPolicy(s.memo_fallback_policy),
            lease_s=s.lock_lease_s,
            acquire_timeout_s=s.lock_acquire_timeout_s,
            peer_wait_s=s.memo_peer_wait_s,
            poll_interval_s=s.memo_poll_interval_s,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> IndexCore:
        """Create the configured store backend and wire components on top of it."""
        store = create_store(settings)
        logger.info(
            "IndexCore ready (store=%s, namespace=%s, fallback=%s)",
            settings.store_backend, settings.cache_namespace, settings.memo_fallback_policy,
        )
        return cls(store, settings)

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def store(self) -> BaseKeyValueStore:
        return self._store

    def memoize(
        self,
        key_builder: KeyBuilder | None = None,
        ttl: float | None = None,
        tags: Iterable[str] | None = None,
        key_prefix: str | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Awaitable[Any]]]:
        """Single-flight memoization decorator bound to this core."""
        return self.memoizer.memoize(
            key_builder=key_builder, ttl=ttl, tags=tags, key_prefix=key_prefix
        )

    def searcher(
        self,
        strategies: Iterable[BaseSearchStrategy],
        use_cache: bool = True,
    ) -> HybridSearcher:
        """Hybrid searcher using the configured fusion defaults."""
        s = self._settings
        return HybridSearcher(
            strategies,
            cache=self.cache if use_cache else None,
            cache_ttl_s=s.search_cache_ttl_s,
            method=s.fusion_method,
            weight_mode=s.fusion_weight_mode,
            rrf_k=s.fusion_rrf_k,
            default_limit=s.search_default_limit,
        )

    async def close(self) -> None:
        """Release store resources."""
        await self._store.close()

    async def __aenter__(self) -> IndexCore:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
