# src/cache/stores/base_store.py - v2
"""Abstract shared key-value store interface.

The cache and the distributed lock are only as safe as these primitives:
``set_if_absent``, ``compare_and_delete`` and ``compare_and_expire`` must be
atomic at the store. Adapters translate backend failures into StoreError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, Iterable


class BaseKeyValueStore(ABC):
    """Unified interface for shared key-value backends.

    ``ttl_s`` arguments are seconds; ``None`` means the key never expires.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the stored bytes, or None when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl_s: float | None = None) -> None:
        """Store bytes, overwriting any existing value."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: bytes, ttl_s: float | None = None) -> bool:
        """Atomically store bytes only if the key holds no live value."""

    @abstractmethod
    async def compare_and_delete(self, key: str, expected: bytes) -> bool:
        """Atomically delete the key only if it currently holds ``expected``."""

    @abstractmethod
    async def compare_and_expire(self, key: str, expected: bytes, ttl_s: float) -> bool:
        """Atomically reset the key's expiry only if it holds ``expected``."""

    @abstractmethod
    async def delete(self, key: str) -> int:
        """Remove a key. Returns the number of keys removed (0 or 1)."""

    @abstractmethod
    def scan(self, pattern: str) -> AsyncIterator[str]:
        """Iterate keys matching a glob pattern, without blocking writers."""

    @abstractmethod
    async def add_to_set(self, key: str, member: str, ttl_s: float | None = None) -> None:
        """Add a member to the set stored at ``key``.

        The set (or the member) stays alive for at least ``ttl_s`` from now;
        an existing longer lifetime is never shortened. ``None`` keeps it
        until it is removed explicitly.
        """

    @abstractmethod
    async def remove_from_set(self, key: str, members: Iterable[str]) -> int:
        """Remove members from the set at ``key``. Returns how many were present."""

    @abstractmethod
    async def set_members(self, key: str) -> set[str]:
        """Return the members of the set stored at ``key``."""

    async def close(self) -> None:
        """Release backend resources."""
