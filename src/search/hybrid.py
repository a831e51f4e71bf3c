# src/search/hybrid.py - v2
"""Hybrid search: run strategies concurrently, fuse, paginate, cache.

Flow for one SearchRequest:
  1. Cache lookup keyed on the full request (if a cache is configured).
  2. Run every weighted strategy concurrently.
  3. Fuse with SearchFusion and slice the requested page.
  4. Store the page under the ``search`` tag.

A failing strategy contributes no results instead of failing the search.
Such a degraded page is returned but never cached.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from indexcore.cache.key_codec import build_key
from indexcore.cache.models import MISSING
from indexcore.cache.result_cache import ResultCache
from indexcore.search.base_strategy import BaseSearchStrategy
from indexcore.search.fusion import DEFAULT_RRF_K, FusionMethod, WeightMode, fuse, paginate
from indexcore.search.models import ScoredDocument, SearchHit, SearchRequest

logger = logging.getLogger(__name__)

SEARCH_TAG = "search"


class HybridSearcher:
    """Fan a query out to several strategies and fuse their rankings.

    Args:
        strategies: Available strategies, addressed by their ``name``.
        cache: Optional result cache for fused pages.
        cache_ttl_s: TTL of cached pages.
        method: Fusion method ("minmax" or "rrf").
        weight_mode: "raw" or "normalized" weights.
        rrf_k: RRF smoothing constant.
        candidate_multiplier: Each strategy is asked for
            ``(offset + limit) * candidate_multiplier`` candidates.
        default_limit: Page size for requests that leave ``limit`` unset.
    """

    def __init__(
        self,
        strategies: Iterable[BaseSearchStrategy],
        cache: ResultCache | None = None,
        cache_ttl_s: float = 60.0,
        method: FusionMethod = "minmax",
        weight_mode: WeightMode = "raw",
        rrf_k: float = DEFAULT_RRF_K,
        candidate_multiplier: int = 2,
        default_limit: int = 10,
    ) -> None:
        self._strategies: dict[str, BaseSearchStrategy] = {}
        for strategy in strategies:
            if strategy.name in self._strategies:
                raise ValueError(f"Duplicate strategy name: {strategy.name!r}")
            self._strategies[strategy.name] = strategy
        if candidate_multiplier < 1:
            raise ValueError("candidate_multiplier must be >= 1")
        if default_limit < 0:
            raise ValueError("default_limit must be >= 0")
        self._cache = cache
        self._cache_ttl_s = cache_ttl_s
        self._method = method
        self._weight_mode = weight_mode
        self._rrf_k = rrf_k
        self._candidate_multiplier = candidate_multiplier
        self._default_limit = default_limit

    @property
    def strategy_names(self) -> list[str]:
        return sorted(self._strategies)

    async def search(self, request: SearchRequest) -> list[SearchHit]:
        """Execute a hybrid search.

        Raises:
            ValueError: If the request names a strategy that is not registered.
        """
        unknown = sorted(set(request.strategy_weights) - set(self._strategies))
        if unknown:
            raise ValueError(f"Unknown strategies: {unknown}")

        key = self.cache_key(request)
        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached is not MISSING:
                logger.debug("Search cache hit for %r", request.query)
                return cached

        names = sorted(request.strategy_weights)
        limit = self.effective_limit(request)
        depth = max(1, (request.offset + limit) * self._candidate_multiplier)
        outcomes = await asyncio.gather(
            *(self._run_strategy(self._strategies[name], request.query, depth) for name in names)
        )
        results = {name: docs for name, (docs, _) in zip(names, outcomes)}
        failed = [name for name, (_, ok) in zip(names, outcomes) if not ok]

        fused = fuse(
            request.query,
            results,
            request.strategy_weights,
            method=self._method,
            weight_mode=self._weight_mode,
            rrf_k=self._rrf_k,
        )
        page = paginate(fused, limit, request.offset)

        if self._cache is not None:
            if failed:
                logger.info("Not caching degraded search %r (failed: %s)", request.query, failed)
            else:
                await self._cache.set(key, page, ttl=self._cache_ttl_s, tags=[SEARCH_TAG])

        logger.info(
            "Search %r: %d strategies, %d fused hits, returning %d",
            request.query, len(names), len(fused), len(page),
        )
        return page

    def effective_limit(self, request: SearchRequest) -> int:
        """Page size for ``request``: its own limit, else the searcher default."""
        return self._default_limit if request.limit is None else request.limit

    def cache_key(self, request: SearchRequest) -> str:
        """Cache key covering the request and the fusion configuration."""
        return build_key(
            SEARCH_TAG,
            f"{self._method}.{self._weight_mode}",
            (request.query,),
            {
                "weights": request.strategy_weights,
                "limit": self.effective_limit(request),
                "offset": request.offset,
                "rrf_k": self._rrf_k,
            },
        )

    async def invalidate_all(self) -> int:
        """Drop every cached search page."""
        if self._cache is None:
            return 0
        return await self._cache.invalidate_tag(SEARCH_TAG)

    async def _run_strategy(
        self, strategy: BaseSearchStrategy, query: str, limit: int
    ) -> tuple[list[ScoredDocument], bool]:
        try:
            return await strategy.search(query, limit), True
        except Exception as e:
            logger.warning("Strategy '%s' failed, contributing no results: %s", strategy.name, e)
            return [], False
