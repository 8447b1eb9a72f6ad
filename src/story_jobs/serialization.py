"""
Deterministic JSON serialization helpers for hashing and persistence.
"""

from __future__ import annotations

from typing import Any

import orjson


def canonicalize(obj: Any) -> Any:
    """
    Convert complex objects into JSON-friendly, deterministic structures.
    """
    if isinstance(obj, dict):
        return {str(k): canonicalize(obj[k]) for k in sorted(obj, key=str)}
    if isinstance(obj, (list, tuple)):
        return [canonicalize(v) for v in obj]
    if isinstance(obj, (set, frozenset)):
        return sorted((canonicalize(v) for v in obj), key=repr)
    if hasattr(obj, "to_dict") and callable(obj.to_dict):
        return canonicalize(obj.to_dict())
    if hasattr(obj, "value") and isinstance(getattr(obj, "value"), (str, int)):
        return obj.value  # Enum members
    return obj


def stable_json_dumps(obj: Any) -> str:
    """
    Dump an object to JSON with stable ordering for hashing.
    """
    return orjson.dumps(canonicalize(obj), option=orjson.OPT_SORT_KEYS).decode("utf-8")


def dumps_record(obj: dict[str, Any]) -> bytes:
    """Serialize a persisted record (pretty, stable key order)."""
    return orjson.dumps(obj, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS)


def fast_json_dumps(obj: Any) -> bytes:
    """Fast JSON serialization to bytes (non-canonical, for API calls)."""
    return orjson.dumps(obj)


def fast_json_loads(data: bytes | str) -> Any:
    """Fast JSON deserialization."""
    return orjson.loads(data)


__all__ = [
    "canonicalize",
    "stable_json_dumps",
    "dumps_record",
    "fast_json_dumps",
    "fast_json_loads",
]
