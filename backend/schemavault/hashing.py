"""
Content hashing for schema definitions.

A schema's identity is the SHA-256 digest of its canonical JSON form.
The same function backs snapshot hashes, ledger hashes and the
per-entity digests used for diffing.

Invariants:
    - The digest depends only on the value passed in, never on metadata
    - Output is always 64 lowercase hex characters
    - canonical=True sorts object keys at every depth; canonical=False
      keeps insertion order (legacy hashes written before canonicalization)

How to change safely:
    - Changing separators, key ordering or encoding invalidates every
      stored hash; treat it as a storage migration
    - Keep canonical and legacy modes side by side until stores are rehashed
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

HASH_PREFIX = "sha256:"


def canonical_json(value: Any, canonical: bool = True) -> str:
    """Serialize a JSON-like value to its hashing form.

    Args:
        value: Dict/list/scalar structure to serialize
        canonical: Sort object keys for order-independent hashing

    Returns:
        Compact JSON string
    """
    return json.dumps(
        value,
        sort_keys=canonical,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def compute_hash(value: Any, canonical: bool = True) -> str:
    """Compute the 64-hex SHA-256 digest of a JSON-like value.

    Example:
        >>> len(compute_hash({"User": {"table": "users"}}))
        64
    """
    return hashlib.sha256(canonical_json(value, canonical).encode("utf-8")).hexdigest()


def entity_digest(entity: Any, canonical: bool = True) -> str:
    """Digest of a single top-level entity definition."""
    return compute_hash(entity, canonical)


def compute_checksum(data: bytes | str) -> str:
    """Checksum of raw bytes in 'sha256:<hex>' form."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return f"{HASH_PREFIX}{hashlib.sha256(data).hexdigest()}"
