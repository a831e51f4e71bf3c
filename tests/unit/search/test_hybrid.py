# tests/unit/search/test_hybrid.py - v2
"""Tests for search/hybrid.py."""

from __future__ import annotations

import pytest

from indexcore.search.base_strategy import BaseSearchStrategy
from indexcore.search.hybrid import SEARCH_TAG, HybridSearcher
from indexcore.search.models import ScoredDocument, SearchRequest


class StaticStrategy(BaseSearchStrategy):
    """Returns a fixed ranking and records the limits it was asked for."""

    def __init__(self, name: str, ranking: list[tuple[str, float]], fail: bool = False):
        self._name = name
        self._ranking = ranking
        self._fail = fail
        self.calls: list[int] = []

    @property
    def name(self) -> str:
        return self._name

    async def search(self, query: str, limit: int) -> list[ScoredDocument]:
        self.calls.append(limit)
        if self._fail:
            raise ConnectionError("backend offline")
        return [ScoredDocument(document_id=d, score=s) for d, s in self._ranking[:limit]]


@pytest.fixture
def lexical():
    return StaticStrategy("lexical", [("doc1", 0.9), ("doc2", 0.1)])


@pytest.fixture
def vector():
    return StaticStrategy("vector", [("doc2", 1.0), ("doc3", 0.5)])


def _request(**overrides):
    params = {"query": "b-tree", "strategy_weights": {"lexical": 0.6, "vector": 0.4}}
    params.update(overrides)
    return SearchRequest(**params)


class TestSearch:
    @pytest.mark.asyncio
    async def test_fuses_strategies(self, lexical, vector):
        searcher = HybridSearcher([lexical, vector])
        hits = await searcher.search(_request())
        assert [h.document_id for h in hits] == ["doc1", "doc2", "doc3"]
        assert hits[0].combined_score == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_only_weighted_strategies_run(self, lexical, vector):
        searcher = HybridSearcher([lexical, vector])
        hits = await searcher.search(_request(strategy_weights={"vector": 1.0}))
        assert [h.document_id for h in hits] == ["doc2", "doc3"]
        assert lexical.calls == []

    @pytest.mark.asyncio
    async def test_pagination_and_candidate_depth(self, lexical, vector):
        searcher = HybridSearcher([lexical, vector], candidate_multiplier=3)
        hits = await searcher.search(_request(limit=1, offset=1))
        assert [h.document_id for h in hits] == ["doc2"]
        assert lexical.calls == [6]

    @pytest.mark.asyncio
    async def test_default_limit_applies_when_unset(self, lexical, vector):
        searcher = HybridSearcher([lexical, vector], default_limit=1, candidate_multiplier=2)
        hits = await searcher.search(_request())
        assert [h.document_id for h in hits] == ["doc1"]
        assert lexical.calls == [2]
        assert searcher.effective_limit(_request(limit=5)) == 5

    def test_negative_default_limit_rejected(self, lexical):
        with pytest.raises(ValueError):
            HybridSearcher([lexical], default_limit=-1)

    @pytest.mark.asyncio
    async def test_failing_strategy_contributes_nothing(self, lexical):
        broken = StaticStrategy("vector", [], fail=True)
        searcher = HybridSearcher([lexical, broken])
        hits = await searcher.search(_request())
        assert [h.document_id for h in hits] == ["doc1", "doc2"]

    @pytest.mark.asyncio
    async def test_unknown_strategy_rejected(self, lexical):
        searcher = HybridSearcher([lexical])
        with pytest.raises(ValueError, match="Unknown strategies"):
            await searcher.search(_request())

    def test_duplicate_names_rejected(self, lexical):
        with pytest.raises(ValueError):
            HybridSearcher([lexical, StaticStrategy("lexical", [])])

    def test_strategy_names_sorted(self, lexical, vector):
        assert HybridSearcher([vector, lexical]).strategy_names == ["lexical", "vector"]

    @pytest.mark.asyncio
    async def test_rrf_method(self, lexical, vector):
        searcher = HybridSearcher([lexical, vector], method="rrf", rrf_k=60)
        hits = await searcher.search(_request(strategy_weights={"lexical": 1.0, "vector": 1.0}))
        assert hits[0].document_id == "doc2"


class TestSearchCache:
    @pytest.mark.asyncio
    async def test_second_search_served_from_cache(self, cache, lexical, vector):
        searcher = HybridSearcher([lexical, vector], cache=cache)
        first = await searcher.search(_request())
        second = await searcher.search(_request())
        assert first == second
        assert len(lexical.calls) == 1

    @pytest.mark.asyncio
    async def test_cache_key_varies_with_request(self, cache, lexical, vector):
        searcher = HybridSearcher([lexical, vector], cache=cache)
        assert searcher.cache_key(_request()) == searcher.cache_key(_request())
        assert searcher.cache_key(_request()) != searcher.cache_key(_request(limit=5))
        assert searcher.cache_key(_request()) != searcher.cache_key(_request(query="hash"))

    @pytest.mark.asyncio
    async def test_degraded_page_not_cached(self, cache, lexical):
        flaky = StaticStrategy("vector", [("doc3", 0.5)], fail=True)
        searcher = HybridSearcher([lexical, flaky], cache=cache)
        degraded = await searcher.search(_request())
        assert [h.document_id for h in degraded] == ["doc1", "doc2"]
        assert cache.stats().sets == 0

        flaky._fail = False
        recovered = await searcher.search(_request())
        assert "doc3" in [h.document_id for h in recovered]
        assert len(flaky.calls) == 2
        assert cache.stats().sets == 1

    @pytest.mark.asyncio
    async def test_unset_limit_shares_key_with_default(self, cache, lexical, vector):
        searcher = HybridSearcher([lexical, vector], cache=cache, default_limit=10)
        assert searcher.cache_key(_request()) == searcher.cache_key(_request(limit=10))

    @pytest.mark.asyncio
    async def test_invalidate_all(self, cache, lexical, vector):
        searcher = HybridSearcher([lexical, vector], cache=cache)
        await searcher.search(_request())
        await searcher.search(_request(query="hash"))
        assert await searcher.invalidate_all() == 2
        assert await cache.store.set_members(f"test:tag:{SEARCH_TAG}") == set()
        await searcher.search(_request())
        assert len(lexical.calls) == 3

    @pytest.mark.asyncio
    async def test_invalidate_without_cache(self, lexical):
        assert await HybridSearcher([lexical]).invalidate_all() == 0
