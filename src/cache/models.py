# src/cache/models.py - v2
"""Cache domain models: CacheEntry, CacheStats, StatsCounter.

CacheEntry is the envelope written to the shared store for every cached
value. StatsCounter is an explicitly owned counter set; inject one per
ResultCache (or share one between several) instead of relying on globals.
"""

from __future__ import annotations

import threading
import time
from typing import Final

from pydantic import BaseModel, ConfigDict, Field, computed_field

NO_EXPIRY: Final[int] = 0
"""TTL value meaning "never expires". Stored as ``expires_at=None``."""


class _Missing:
    """Sentinel type returned by cache lookups that found nothing."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Final = _Missing()


class CacheEntry(BaseModel):
    """Single cached value with its expiry and invalidation tags."""

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    key: str
    value: bytes
    created_at: float
    expires_at: float | None = None
    tags: set[str] = Field(default_factory=set)

    def is_expired(self, now: float | None = None) -> bool:
        """True once ``expires_at`` has passed. Never-expiring entries never expire."""
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return current >= self.expires_at

    def remaining_ttl(self, now: float | None = None) -> float | None:
        """Seconds left before expiry, None for never-expiring entries."""
        if self.expires_at is None:
            return None
        current = time.time() if now is None else now
        return max(0.0, self.expires_at - current)


class CacheStats(BaseModel):
    """Point-in-time snapshot of cache counters."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        if lookups == 0:
            return 0.0
        return self.hits / lookups


class StatsCounter:
    """Thread-safe counters backing CacheStats snapshots."""

    _FIELDS = ("hits", "misses", "sets", "deletes", "errors")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = dict.fromkeys(self._FIELDS, 0)

    def incr(self, name: str, amount: int = 1) -> None:
        if name not in self._counts:
            raise KeyError(f"Unknown counter: {name!r}")
        with self._lock:
            self._counts[name] += amount

    def snapshot(self) -> CacheStats:
        with self._lock:
            return CacheStats(**self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts = dict.fromkeys(self._FIELDS, 0)
