# src/search/models.py - v2
"""Search domain models: ScoredDocument, SearchHit, SearchRequest."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ScoredDocument(BaseModel):
    """One (document, score) pair emitted by a search strategy."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    score: float


class SearchHit(BaseModel):
    """Fused result for one document.

    ``source_scores`` holds each strategy's contribution before weighting
    (min-max normalized score, or reciprocal rank for RRF).
    """

    document_id: str
    source_scores: dict[str, float] = Field(default_factory=dict)
    combined_score: float = 0.0


class SearchRequest(BaseModel):
    """Immutable description of one hybrid search.

    ``limit`` left as None takes the searcher's configured default.
    """

    model_config = ConfigDict(frozen=True)

    query: str
    strategy_weights: dict[str, float]
    limit: int | None = None
    offset: int = 0

    @field_validator("strategy_weights")
    @classmethod
    def validate_weights(cls, v: dict[str, float]) -> dict[str, float]:  # noqa: N805
        negative = sorted(name for name, w in v.items() if w < 0)
        if negative:
            raise ValueError(f"strategy weights must be >= 0: {negative}")
        return v

    @field_validator("limit", "offset")
    @classmethod
    def validate_non_negative(cls, v: int | None) -> int | None:  # noqa: N805
        if v is not None and v < 0:
            raise ValueError("must be >= 0")
        return v
