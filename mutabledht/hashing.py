"""Hashing utilities for mutabledht.

Centralizes the SHA-256 patterns used for correlation keys and record
integrity metadata.  Callers should import from here instead of inlining
``hashlib.sha256(...)`` directly.
"""

from __future__ import annotations

import hashlib


def content_hash(data: bytes | str) -> str:
    """Compute the full SHA-256 hex digest of *data*.

    Args:
        data: Raw bytes or text string (encoded as UTF-8).

    Returns:
        Lowercase 64-character hex SHA-256 digest.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def short_hash(data: bytes | str, *, length: int = 16) -> str:
    """Compute a truncated SHA-256 hex digest for log-friendly identifiers."""
    return content_hash(data)[:length]


def info_hash(public_key: bytes, salt: str) -> str:
    """Derive the correlation-map key for one DHT item.

    The digest covers the raw public key followed by the UTF-8 salt, so
    the same ``(public_key, salt)`` pair always maps to the same key.
    This is not the overlay's routing target; it only correlates lookups
    with their results.
    """
    return content_hash(public_key + salt.encode("utf-8"))
