# src/search/base_strategy.py - v1
"""Abstract search strategy interface.

A strategy wraps one external scorer (lexical, vector, statistical) and
only has to emit ranked (document_id, score) pairs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from indexcore.search.models import ScoredDocument


class BaseSearchStrategy(ABC):
    """Unified interface for independent search strategies."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Strategy name used as the weight key."""

    @abstractmethod
    async def search(self, query: str, limit: int) -> list[ScoredDocument]:
        """Return up to ``limit`` scored documents, best first."""
