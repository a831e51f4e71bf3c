# src/search/fusion.py - v1
"""Score fusion across independent search strategies.

Default method ``minmax``: each strategy's scores are rescaled into [0, 1]
within that strategy's own result set, then summed with the strategy
weights. ``rrf`` sums ``weight / (k + rank)`` instead and ignores raw scores.

Ordering is total and reproducible: combined score descending, then
``document_id`` ascending. Strategies are accumulated in sorted-name order
so floating-point sums do not depend on mapping iteration order.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Literal, Mapping, Sequence, Union

from indexcore.search.models import ScoredDocument, SearchHit

logger = logging.getLogger(__name__)

StrategyHit = Union[ScoredDocument, SearchHit, tuple[str, float]]
FusionMethod = Literal["minmax", "rrf"]
WeightMode = Literal["raw", "normalized"]

DEFAULT_RRF_K = 60.0


def fuse(
    query: str,
    strategy_results: Mapping[str, Sequence[StrategyHit]],
    weights: Mapping[str, float],
    *,
    method: FusionMethod = "minmax",
    weight_mode: WeightMode = "raw",
    rrf_k: float = DEFAULT_RRF_K,
) -> list[SearchHit]:
    """Merge per-strategy ranked lists into one ranked list.

    Args:
        query: The query the lists answer (used for logging only).
        strategy_results: Strategy name -> ordered hits, best first.
        weights: Strategy name -> weight. Weights are used as given unless
            ``weight_mode="normalized"``, which divides them by their sum.
        method: "minmax" (weighted normalized scores) or "rrf".
        rrf_k: Smoothing constant for RRF.

    Returns:
        Fused hits, best first. Empty input yields an empty list.

    Raises:
        ValueError: On a missing or negative weight, a zero weight sum in
            normalized mode, or a non-positive ``rrf_k``.
    """
    if not strategy_results:
        return []

    effective = _resolve_weights(strategy_results, weights, weight_mode)

    if method == "minmax":
        contributions = {
            name: _minmax(_best_scores(hits)) for name, hits in strategy_results.items()
        }
    elif method == "rrf":
        if rrf_k <= 0:
            raise ValueError("rrf_k must be positive")
        contributions = {
            name: _reciprocal_ranks(hits, rrf_k) for name, hits in strategy_results.items()
        }
    else:
        raise ValueError(f"Unsupported fusion method: {method!r}")

    source_scores: dict[str, dict[str, float]] = defaultdict(dict)
    combined: dict[str, float] = defaultdict(float)
    for name in sorted(contributions):
        for doc_id, score in contributions[name].items():
            source_scores[doc_id][name] = score
            combined[doc_id] += effective[name] * score

    hits = [
        SearchHit(
            document_id=doc_id,
            source_scores=dict(sorted(source_scores[doc_id].items())),
            combined_score=combined[doc_id],
        )
        for doc_id in combined
    ]
    hits.sort(key=lambda h: (-h.combined_score, h.document_id))

    logger.debug(
        "Fused %d strategies into %d hits for query %r (method=%s)",
        len(strategy_results), len(hits), query, method,
    )
    return hits


def paginate(hits: Sequence[SearchHit], limit: int, offset: int = 0) -> list[SearchHit]:
    """Slice a fused list. ``limit=0`` returns everything after ``offset``."""
    if limit < 0 or offset < 0:
        raise ValueError("limit and offset must be >= 0")
    if limit == 0:
        return list(hits[offset:])
    return list(hits[offset:offset + limit])


def _resolve_weights(
    strategy_results: Mapping[str, Sequence[StrategyHit]],
    weights: Mapping[str, float],
    weight_mode: WeightMode,
) -> dict[str, float]:
    missing = sorted(name for name, hits in strategy_results.items() if hits and name not in weights)
    if missing:
        raise ValueError(f"No weight given for strategies: {missing}")
    negative = sorted(name for name, w in weights.items() if w < 0)
    if negative:
        raise ValueError(f"Strategy weights must be >= 0: {negative}")

    resolved = {name: float(weights.get(name, 0.0)) for name in strategy_results}
    if weight_mode == "raw":
        return resolved
    if weight_mode == "normalized":
        total = sum(resolved.values())
        if total <= 0:
            raise ValueError("Cannot normalize weights that sum to zero")
        return {name: w / total for name, w in resolved.items()}
    raise ValueError(f"Unsupported weight mode: {weight_mode!r}")


def _as_pair(hit: StrategyHit) -> tuple[str, float]:
    if isinstance(hit, ScoredDocument):
        return hit.document_id, hit.score
    if isinstance(hit, SearchHit):
        return hit.document_id, hit.combined_score
    doc_id, score = hit
    return str(doc_id), float(score)


def _best_scores(hits: Sequence[StrategyHit]) -> dict[str, float]:
    """Document -> score, keeping the highest score for duplicates."""
    best: dict[str, float] = {}
    for hit in hits:
        doc_id, score = _as_pair(hit)
        if doc_id not in best or score > best[doc_id]:
            best[doc_id] = score
    return best


def _minmax(scores: dict[str, float]) -> dict[str, float]:
    """Rescale into [0, 1]. A strategy whose scores are all equal maps them to 1.0."""
    if not scores:
        return {}
    low = min(scores.values())
    high = max(scores.values())
    span = high - low
    if span == 0:
        return dict.fromkeys(scores, 1.0)
    return {doc_id: (score - low) / span for doc_id, score in scores.items()}


def _reciprocal_ranks(hits: Sequence[StrategyHit], k: float) -> dict[str, float]:
    """Document -> 1 / (k + rank), rank 1-based, first occurrence wins."""
    ranks: dict[str, float] = {}
    for rank, hit in enumerate(hits, start=1):
        doc_id, _ = _as_pair(hit)
        if doc_id not in ranks:
            ranks[doc_id] = 1.0 / (k + rank)
    return ranks
