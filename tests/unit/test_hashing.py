"""
Unit tests for content hashing.

Tests cover:
- Digest format
- Key-order independence in canonical mode
- Legacy insertion-order mode
- Checksums
"""

import hashlib

from backend.schemavault.hashing import (
    canonical_json,
    compute_checksum,
    compute_hash,
    entity_digest,
)


class TestComputeHash:
    """Tests for compute_hash."""

    def test_hash_is_64_hex_chars(self):
        """Digest is lowercase hex SHA-256."""
        digest = compute_hash({"User": {"table": "users"}})

        assert len(digest) == 64
        assert all(c in "0123456789abcdef" for c in digest)

    def test_key_order_does_not_matter(self):
        """Canonical hashing ignores key insertion order."""
        a = {"User": {"table": "users", "fields": {"id": {"type": "uuid"}}}}
        b = {"User": {"fields": {"id": {"type": "uuid"}}, "table": "users"}}

        assert compute_hash(a) == compute_hash(b)

    def test_legacy_mode_is_order_sensitive(self):
        """Non-canonical hashing follows insertion order."""
        a = {"a": 1, "b": 2}
        b = {"b": 2, "a": 1}

        assert compute_hash(a, canonical=False) != compute_hash(b, canonical=False)

    def test_any_field_change_changes_hash(self):
        """Changing a nested value changes the digest."""
        base = {"User": {"fields": {"id": {"type": "uuid", "primary": True}}}}
        changed = {"User": {"fields": {"id": {"type": "uuid", "primary": False}}}}

        assert compute_hash(base) != compute_hash(changed)

    def test_hash_matches_canonical_json(self):
        """Digest is SHA-256 over the canonical JSON bytes."""
        value = {"b": [1, 2], "a": "é"}
        expected = hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()

        assert compute_hash(value) == expected
        assert canonical_json(value) == '{"a":"é","b":[1,2]}'

    def test_entity_digest_matches_compute_hash(self):
        """Entity digest is the hash of the entity value."""
        entity = {"table": "posts"}

        assert entity_digest(entity) == compute_hash(entity)


class TestComputeChecksum:
    """Tests for compute_checksum."""

    def test_checksum_prefix(self):
        """Checksums carry the sha256: prefix."""
        checksum = compute_checksum(b"data")

        assert checksum == "sha256:" + hashlib.sha256(b"data").hexdigest()

    def test_str_and_bytes_agree(self):
        """Strings are checksummed as UTF-8 bytes."""
        assert compute_checksum("hello") == compute_checksum(b"hello")
