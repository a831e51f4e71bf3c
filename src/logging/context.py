# src/logging/context.py - v3
"""Contextual logging support: attach operation, cache key and lock key to log records."""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

# Context variables for structured logging, set per cache/lock operation.
_operation: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "operation", default=None
)
_cache_key: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "cache_key", default=None
)
_lock_key: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "lock_key", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    operation: str | None = None
    cache_key: str | None = None
    lock_key: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        operation=_operation.get(),
        cache_key=_cache_key.get(),
        lock_key=_lock_key.get(),
    )


def set_operation_context(operation: str, cache_key: str | None = None) -> None:
    """Set operation-level context (e.g. one memoized call)."""
    _operation.set(operation)
    _cache_key.set(cache_key)


def set_lock_context(lock_key: str | None) -> None:
    """Set the lock key currently being acquired or held."""
    _lock_key.set(lock_key)


@contextmanager
def operation_context(operation: str, cache_key: str | None = None) -> Iterator[None]:
    """Scope operation context to a block and restore the previous values after."""
    op_token = _operation.set(operation)
    key_token = _cache_key.set(cache_key)
    try:
        yield
    finally:
        _cache_key.reset(key_token)
        _operation.reset(op_token)


@contextmanager
def lock_context(lock_key: str) -> Iterator[None]:
    """Scope the lock key to a block; the enclosing lock key is restored after."""
    token = _lock_key.set(lock_key)
    try:
        yield
    finally:
        _lock_key.reset(token)


def clear_context() -> None:
    """Reset all context variables."""
    _operation.set(None)
    _cache_key.set(None)
    _lock_key.set(None)
