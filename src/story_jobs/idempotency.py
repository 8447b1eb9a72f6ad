"""
Idempotency keys for job submission.

A key identifies one logical submission attempt. It is sent with
``POST /jobs`` as the ``Idempotency-Key`` header so that client-side
retries of the same attempt are never processed twice by the server.

Key format
----------
    {request_hash}.{nonce}

- ``request_hash``: 32 hex chars of a blake3 hash over the canonical
  request content, so every attempt for the same request shares a prefix.
- ``nonce``: 12 random hex chars, so a user-initiated retry of a failed
  job gets a fresh key and is treated by the server as a new attempt.
"""

from __future__ import annotations

import uuid
from typing import Any

from .hashing import content_hash
from .types import StoryRequest

REQUEST_HASH_LENGTH = 32
NONCE_LENGTH = 12


def compute_request_hash(request: StoryRequest | dict[str, Any]) -> str:
    """Content hash of a request, independent of dict key order."""
    if isinstance(request, StoryRequest):
        request = request.to_dict()
    return content_hash(request, truncate=REQUEST_HASH_LENGTH)


def generate_idempotency_key(
    request: StoryRequest | dict[str, Any],
    nonce: str | None = None,
) -> str:
    """
    Generate an idempotency key for a new submission attempt.

    Args:
        request: The request being submitted
        nonce: Explicit nonce (tests); random when omitted

    Returns:
        Key string in ``{request_hash}.{nonce}`` form
    """
    nonce = nonce or uuid.uuid4().hex[:NONCE_LENGTH]
    return f"{compute_request_hash(request)}.{nonce}"


def request_hash_of(key: str) -> str:
    """Extract the request-hash prefix of an idempotency key."""
    return key.split(".", 1)[0]


def same_request(key_a: str, key_b: str) -> bool:
    """Whether two keys were derived from the same request content."""
    return request_hash_of(key_a) == request_hash_of(key_b)


__all__ = [
    "compute_request_hash",
    "generate_idempotency_key",
    "request_hash_of",
    "same_request",
]
