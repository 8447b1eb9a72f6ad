"""
Hashing utilities for content addressing.
"""

from __future__ import annotations

from typing import Any

from blake3 import blake3

from .serialization import stable_json_dumps


def compute_hash(data: str | bytes, truncate: int | None = None) -> str:
    """
    Compute a blake3 hex digest.

    Args:
        data: Input data to hash (string or bytes)
        truncate: Truncate output to N characters (for shorter keys)
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    result = blake3(data).hexdigest()
    return result[:truncate] if truncate else result


def content_hash(obj: Any, truncate: int | None = None) -> str:
    """
    Deterministic content hash for any JSON-serializable object.

    Output does not depend on dict key order.
    """
    return compute_hash(stable_json_dumps(obj), truncate=truncate)


__all__ = ["compute_hash", "content_hash"]
