# src/config/settings.py - v2
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for all deployment-specific settings: which shared
store backs the cache and locks, default TTLs and leases, the memoizer's
lock-timeout fallback, fusion defaults and logging.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Shared store ===
    store_backend: Literal["memory", "sqlite", "redis"] = "memory"
    store_redis_url: str = ""
    store_sqlite_path: Path = Path("~/.indexcore/store.db")
    store_timeout_s: float = 5.0

    # === Result cache ===
    cache_namespace: str = "indexcore"
    cache_default_ttl_s: float = 300.0

    # === Distributed lock ===
    lock_lease_s: float = 30.0
    lock_acquire_timeout_s: float = 10.0
    lock_retry_base_delay_s: float = 0.05
    lock_retry_max_delay_s: float = 1.0
    lock_store_max_retries: int = 3

    # === Memoization ===
    memo_fallback_policy: Literal["wait_for_peer", "compute_anyway"] = "wait_for_peer"
    memo_peer_wait_s: float = 30.0
    memo_poll_interval_s: float = 0.1

    # === Search fusion ===
    fusion_method: Literal["minmax", "rrf"] = "minmax"
    fusion_weight_mode: Literal["raw", "normalized"] = "raw"
    fusion_rrf_k: float = 60.0
    search_default_limit: int = 10
    search_cache_ttl_s: float = 60.0

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator(
        "cache_default_ttl_s",
        "lock_retry_base_delay_s",
        "memo_peer_wait_s",
        "search_cache_ttl_s",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:  # noqa: N805
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator(
        "lock_lease_s",
        "lock_acquire_timeout_s",
        "memo_poll_interval_s",
        "fusion_rrf_k",
        "store_timeout_s",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:  # noqa: N805
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("lock_store_max_retries", "search_default_limit")
    @classmethod
    def validate_count(cls, v: int) -> int:  # noqa: N805
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if self.store_backend == "redis" and not self.store_redis_url:
            errors.append("STORE_BACKEND=redis requires STORE_REDIS_URL")

        if self.lock_retry_max_delay_s < self.lock_retry_base_delay_s:
            errors.append("LOCK_RETRY_MAX_DELAY_S must be >= LOCK_RETRY_BASE_DELAY_S")

        if (
            self.memo_fallback_policy == "wait_for_peer"
            and self.memo_poll_interval_s > self.memo_peer_wait_s
        ):
            errors.append("MEMO_POLL_INTERVAL_S must be <= MEMO_PEER_WAIT_S")

        if ":" in self.cache_namespace or any(c in self.cache_namespace for c in "*?["):
            errors.append("CACHE_NAMESPACE must not contain ':' or glob characters")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or per-service config).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
