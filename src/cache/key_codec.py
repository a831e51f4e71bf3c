# src/cache/key_codec.py - v2
"""Deterministic cache-key construction.

Keys have the shape ``{prefix}:{identity}:{sha256}``. The digest is computed
over a canonical JSON rendering of the call arguments, so semantically equal
calls (same mapping entries in any order, ``1`` vs ``1.0``) share a key.
A Decimal shares a key with a float only when both hold exactly the same
value; otherwise its exact digits are used.
"""

from __future__ import annotations

import functools
import hashlib
import json
import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Mapping, Sequence

from pydantic import BaseModel

from indexcore.core.errors import EncodingError

DIGEST_LENGTH = 64


def build_key(
    prefix: str,
    identity: str,
    args: Sequence[Any] = (),
    kwargs: Mapping[str, Any] | None = None,
) -> str:
    """Build a cache key for a call.

    Args:
        prefix: Human-readable namespace kept verbatim in the key.
        identity: Identity of the computation (see function_identity).
        args: Positional arguments.
        kwargs: Keyword arguments; their order never matters.

    Returns:
        ``"{prefix}:{identity}:{hex digest}"``.

    Raises:
        EncodingError: If an argument has no deterministic canonical form.
    """
    payload = {
        "args": [_canonical(a, set()) for a in args],
        "kwargs": _canonical(dict(kwargs or {}), set()),
    }
    digest = hashlib.sha256(
        json.dumps(payload, sort_keys=True, separators=(",", ":"), allow_nan=False).encode("utf-8")
    ).hexdigest()
    return f"{prefix}:{identity}:{digest}"


def function_identity(fn: Callable[..., Any]) -> str:
    """Stable identity of a callable: ``module.qualname``.

    Callable instances are identified by their class.
    """
    if not hasattr(fn, "__qualname__") and not isinstance(fn, functools.partial):
        fn = type(fn)
    module = getattr(fn, "__module__", None) or "<unknown>"
    qualname = getattr(fn, "__qualname__", None) or getattr(fn, "__name__", repr(fn))
    return f"{module}.{qualname}"


def _canonical(value: Any, active: set[int]) -> Any:
    """Reduce a value to tagged JSON-compatible primitives with a fixed order."""
    if value is None or isinstance(value, str):
        return value
    # bool before int: True and 1 are different arguments
    if isinstance(value, bool):
        return ["b", value]
    if isinstance(value, int):
        return ["n", str(value)]
    if isinstance(value, float):
        if not math.isfinite(value):
            raise EncodingError(f"Non-finite float cannot be part of a cache key: {value!r}")
        if value.is_integer():
            return ["n", str(int(value))]
        return ["n", repr(value)]
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise EncodingError(f"Non-finite Decimal cannot be part of a cache key: {value!r}")
        if value == value.to_integral_value():
            return ["n", str(int(value))]
        if Decimal(float(value)) == value:
            return ["n", repr(float(value))]
        return ["dec", format(value, "f").rstrip("0")]
    if isinstance(value, bytes):
        return ["x", value.hex()]
    if isinstance(value, datetime):
        return ["dt", value.isoformat()]
    if isinstance(value, date):
        return ["d", value.isoformat()]

    marker = id(value)
    if marker in active:
        raise EncodingError("Cyclic structure cannot be part of a cache key")
    active.add(marker)
    try:
        if isinstance(value, BaseModel):
            return ["m", type(value).__qualname__, _canonical(value.model_dump(), active)]
        if isinstance(value, Mapping):
            items = [(_dumps(_canonical(k, active)), _canonical(v, active)) for k, v in value.items()]
            items.sort(key=lambda kv: kv[0])
            return ["map", items]
        if isinstance(value, (set, frozenset)):
            elements = sorted(_dumps(_canonical(v, active)) for v in value)
            return ["set", elements]
        if isinstance(value, (list, tuple)):
            return ["seq", [_canonical(v, active) for v in value]]
    finally:
        active.discard(marker)

    raise EncodingError(
        f"Unsupported argument type for cache key: {type(value).__name__}"
    )


def _dumps(canonical: Any) -> str:
    return json.dumps(canonical, sort_keys=True, separators=(",", ":"), allow_nan=False)
