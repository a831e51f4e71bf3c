# src/cache/serialization.py - v1
"""Storage-safe byte encoding of cached values.

Values are written as JSON. Types JSON cannot represent faithfully (tuples,
sets, bytes, datetimes, non-string mapping keys, pydantic models) are wrapped
in a small tagged envelope ``{"__t__": <tag>, "v": <payload>}`` so that
``decode(encode(v)) == v`` holds for every supported shape.
"""

from __future__ import annotations

import base64
import importlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ValidationError

from indexcore.core.errors import SerializationError

_TAG = "__t__"


def encode(value: Any) -> bytes:
    """Encode a value to UTF-8 JSON bytes.

    Raises:
        SerializationError: On cyclic structures or unsupported types.
    """
    tree = _to_tree(value, set())
    return json.dumps(tree, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode(data: bytes) -> Any:
    """Decode bytes produced by encode().

    Raises:
        SerializationError: If the payload is malformed.
    """
    try:
        tree = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SerializationError(f"Malformed payload: {e}") from e
    return _from_tree(tree)


def _to_tree(value: Any, active: set[int]) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, bytes):
        return {_TAG: "bytes", "v": base64.b64encode(value).decode("ascii")}
    if isinstance(value, datetime):
        return {_TAG: "datetime", "v": value.isoformat()}
    if isinstance(value, date):
        return {_TAG: "date", "v": value.isoformat()}
    if isinstance(value, Decimal):
        return {_TAG: "decimal", "v": str(value)}

    marker = id(value)
    if marker in active:
        raise SerializationError(
            f"Cyclic reference detected while encoding {type(value).__name__}"
        )
    active.add(marker)
    try:
        if isinstance(value, BaseModel):
            cls = type(value)
            return {
                _TAG: "model",
                "cls": f"{cls.__module__}:{cls.__qualname__}",
                "v": _to_tree(value.model_dump(), active),
            }
        if isinstance(value, dict):
            if all(isinstance(k, str) for k in value) and _TAG not in value:
                return {k: _to_tree(v, active) for k, v in value.items()}
            return {
                _TAG: "dict",
                "v": [[_to_tree(k, active), _to_tree(v, active)] for k, v in value.items()],
            }
        if isinstance(value, list):
            return [_to_tree(v, active) for v in value]
        if isinstance(value, tuple):
            return {_TAG: "tuple", "v": [_to_tree(v, active) for v in value]}
        if isinstance(value, frozenset):
            return {_TAG: "frozenset", "v": [_to_tree(v, active) for v in value]}
        if isinstance(value, set):
            return {_TAG: "set", "v": [_to_tree(v, active) for v in value]}
    finally:
        active.discard(marker)

    raise SerializationError(f"Unsupported type for serialization: {type(value).__name__}")


def _from_tree(tree: Any) -> Any:
    if isinstance(tree, list):
        return [_from_tree(v) for v in tree]
    if not isinstance(tree, dict):
        return tree
    if _TAG not in tree:
        return {k: _from_tree(v) for k, v in tree.items()}

    tag = tree[_TAG]
    payload = tree.get("v")
    try:
        if tag == "bytes":
            return base64.b64decode(payload, validate=True)
        if tag == "datetime":
            return datetime.fromisoformat(payload)
        if tag == "date":
            return date.fromisoformat(payload)
        if tag == "decimal":
            return Decimal(payload)
        if tag == "tuple":
            return tuple(_from_tree(v) for v in payload)
        if tag == "set":
            return {_from_tree(v) for v in payload}
        if tag == "frozenset":
            return frozenset(_from_tree(v) for v in payload)
        if tag == "dict":
            return {_from_tree(k): _from_tree(v) for k, v in payload}
        if tag == "model":
            return _load_model(tree["cls"]).model_validate(_from_tree(payload))
    except SerializationError:
        raise
    except (TypeError, ValueError, KeyError, ValidationError) as e:
        raise SerializationError(f"Corrupt '{tag}' payload: {e}") from e
    raise SerializationError(f"Unknown type tag: {tag!r}")


def _load_model(path: str) -> type[BaseModel]:
    """Resolve ``module:Qualified.Name`` to a pydantic model class."""
    module_name, _, qualname = path.partition(":")
    try:
        obj: Any = importlib.import_module(module_name)
        for part in qualname.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as e:
        raise SerializationError(f"Cannot resolve model class {path!r}: {e}") from e
    if not (isinstance(obj, type) and issubclass(obj, BaseModel)):
        raise SerializationError(f"{path!r} is not a pydantic model")
    return obj
