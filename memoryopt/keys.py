"""Deterministic cache keys for memory queries.

Keys are built from the sorted parameter names so that two queries with the
same parameters always share a key regardless of insertion order::

    >>> encode_key({"table_name": "messages", "room_id": "r1", "count": 10})
    'memories:count:10|room_id:"r1"|table_name:"messages"'
"""

from __future__ import annotations

import json
from typing import Any, Mapping

KEY_PREFIX = "memories:"


class _Undefined:
    """Marker for a parameter that is present but explicitly undefined."""

    _instance: "_Undefined | None" = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


def _default(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if hasattr(value, "tolist"):
        return value.tolist()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if value is UNDEFINED:
        return None
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _encode_value(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_default)


def encode_key(params: Mapping[str, Any]) -> str:
    """Return the cache key for ``params``."""
    parts = [f"{name}:{_encode_value(params[name])}" for name in sorted(params)]
    return KEY_PREFIX + "|".join(parts)


def key_fragment(name: str, value: Any) -> str:
    """Return the substring ``encode_key`` emits for a single parameter."""
    return f"{name}:{_encode_value(value)}"


__all__ = ["KEY_PREFIX", "UNDEFINED", "encode_key", "key_fragment"]
