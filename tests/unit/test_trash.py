"""
Unit tests for the trash manager.

Tests cover:
- Expiration dates and status derivation
- Move/restore lifecycle
- Cleanup and statistics
"""

from datetime import datetime, timedelta, timezone

import pytest

from backend.schemavault.retention import to_iso
from backend.schemavault.storage import InMemoryStorage
from backend.schemavault.trash import (
    TrashEntry,
    TrashError,
    TrashManager,
    TrashMetadata,
    TrashStatus,
    TrashType,
    calculate_expiration_date,
    is_expired,
    trash_status,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _entry(expires_in_days, restored=False):
    return TrashEntry(
        id="1_x.sql",
        type=TrashType.MIGRATION,
        name="x.sql",
        original_path="migrations/x.sql",
        trash_path="trash/1_x.sql",
        deleted_at=to_iso(NOW - timedelta(days=1)),
        expires_at=to_iso(NOW + timedelta(days=expires_in_days)),
        restored_at=to_iso(NOW) if restored else None,
    )


class TestStatus:
    """Tests for expiry and status helpers."""

    def test_calculate_expiration_date(self):
        """Default retention is 30 days."""
        assert calculate_expiration_date(now=NOW) == NOW + timedelta(days=30)
        assert calculate_expiration_date(7, now=NOW) == NOW + timedelta(days=7)

    def test_is_expired(self):
        """Expired strictly after expires_at."""
        assert is_expired(_entry(-1), now=NOW)
        assert not is_expired(_entry(1), now=NOW)
        assert not is_expired(_entry(0), now=NOW)

    def test_status_derivation(self):
        """active, expired and restored are derived."""
        assert trash_status(_entry(5), now=NOW) == TrashStatus.ACTIVE
        assert trash_status(_entry(-5), now=NOW) == TrashStatus.EXPIRED
        assert trash_status(_entry(-5, restored=True), now=NOW) == TrashStatus.RESTORED


class TestTrashManager:
    """Tests for TrashManager."""

    @pytest.fixture
    def storage(self):
        storage = InMemoryStorage()
        storage.write("migrations/0003_add_posts.sql", b"CREATE TABLE posts ();")
        return storage

    @pytest.fixture
    def trash(self, storage):
        return TrashManager(storage, retention_days=30)

    def test_move_to_trash(self, trash, storage):
        """Moving removes the original and keeps the bytes in trash."""
        entry = trash.move_to_trash(
            "migrations/0003_add_posts.sql",
            TrashType.MIGRATION,
            TrashMetadata(migration_hash="abc", reason="rolled back"),
            now=NOW,
        )

        assert entry.id.endswith("_0003_add_posts.sql")
        assert entry.name == "0003_add_posts.sql"
        assert entry.expires_at == to_iso(NOW + timedelta(days=30))
        assert storage.read("migrations/0003_add_posts.sql") is None
        assert storage.read(entry.trash_path) == b"CREATE TABLE posts ();"
        assert trash.get_entry(entry.id) == entry

    def test_move_missing_file(self, trash):
        """Trashing a missing key raises TrashError."""
        with pytest.raises(TrashError, match="File not found"):
            trash.move_to_trash("migrations/missing.sql", TrashType.MIGRATION)

    def test_restore(self, trash, storage):
        """Restore puts the bytes back and marks the entry restored."""
        entry = trash.move_to_trash("migrations/0003_add_posts.sql", "migration")

        restored = trash.restore_from_trash(entry.id)

        assert storage.read("migrations/0003_add_posts.sql") == b"CREATE TABLE posts ();"
        assert restored.restored_at is not None
        assert trash_status(trash.get_entry(entry.id)) == TrashStatus.RESTORED

    def test_restore_twice_rejected(self, trash):
        """A restored entry cannot be restored again."""
        entry = trash.move_to_trash("migrations/0003_add_posts.sql", TrashType.MIGRATION)
        trash.restore_from_trash(entry.id)

        with pytest.raises(TrashError, match="already restored"):
            trash.restore_from_trash(entry.id)

    def test_restore_expired_rejected(self, trash):
        """Expired entries cannot be restored."""
        entry = trash.move_to_trash("migrations/0003_add_posts.sql", TrashType.MIGRATION, now=NOW)

        with pytest.raises(TrashError, match="expired"):
            trash.restore_from_trash(entry.id, now=NOW + timedelta(days=31))

    def test_restore_unknown(self, trash):
        """Unknown ids raise TrashError."""
        with pytest.raises(TrashError, match="not found"):
            trash.restore_from_trash("nope")

    def test_list_entries_newest_first(self, trash, storage):
        """Entries are ordered by deletion time, newest first."""
        storage.write("snapshots/a.json", b"{}")
        first = trash.move_to_trash("snapshots/a.json", TrashType.SCHEMA_SNAPSHOT, now=NOW - timedelta(days=2))
        second = trash.move_to_trash("migrations/0003_add_posts.sql", TrashType.MIGRATION, now=NOW)

        assert [e.id for e in trash.list_entries()] == [second.id, first.id]

    def test_permanently_delete(self, trash, storage):
        """Purged entries are gone for good."""
        entry = trash.move_to_trash("migrations/0003_add_posts.sql", TrashType.MIGRATION)

        trash.permanently_delete(entry.id)

        assert trash.get_entry(entry.id) is None
        assert storage.read(entry.trash_path) is None
        with pytest.raises(TrashError):
            trash.permanently_delete(entry.id)

    def test_cleanup_expired(self, trash, storage):
        """Cleanup purges expired entries; dry run only counts."""
        storage.write("data/users.csv", b"id\n1\n")
        old = trash.move_to_trash("data/users.csv", TrashType.DATA_SNAPSHOT, now=NOW - timedelta(days=40))
        fresh = trash.move_to_trash("migrations/0003_add_posts.sql", TrashType.MIGRATION, now=NOW)

        assert trash.cleanup_expired(dry_run=True, now=NOW) == {"deleted": 1, "total": 1}
        assert trash.get_entry(old.id) is not None

        assert trash.cleanup_expired(now=NOW) == {"deleted": 1, "total": 1}
        assert trash.get_entry(old.id) is None
        assert trash.get_entry(fresh.id) is not None

    def test_cleanup_releases_restored_sidecars(self, trash, storage):
        """Restored entries keep their sidecar until expiry, then cleanup drops it."""
        entry = trash.move_to_trash("migrations/0003_add_posts.sql", TrashType.MIGRATION, now=NOW)
        trash.restore_from_trash(entry.id, now=NOW)

        assert trash.cleanup_expired(now=NOW + timedelta(days=10)) == {"deleted": 0, "total": 0}
        assert trash.get_entry(entry.id) is not None

        assert trash.cleanup_expired(now=NOW + timedelta(days=31)) == {"deleted": 0, "total": 0}
        assert trash.get_entry(entry.id) is None
        assert storage.list("trash") == []
        assert storage.read("migrations/0003_add_posts.sql") == b"CREATE TABLE posts ();"

    def test_get_stats(self, trash, storage):
        """Stats count entries per status and bytes held."""
        storage.write("data/users.csv", b"id\n1\n")
        trash.move_to_trash("data/users.csv", TrashType.DATA_SNAPSHOT, now=NOW - timedelta(days=40))
        trash.move_to_trash("migrations/0003_add_posts.sql", TrashType.MIGRATION, now=NOW)

        stats = trash.get_stats(now=NOW)

        assert stats == {
            "total": 2,
            "active": 1,
            "expired": 1,
            "restored": 0,
            "totalSize": len(b"id\n1\n") + len(b"CREATE TABLE posts ();"),
        }
