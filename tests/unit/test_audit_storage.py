"""
Unit tests for audit storage backends.

Tests cover:
- SQLite table creation, append and filtered query
- JSON-lines file backend
- Retention purge
- Backend selection from configuration
"""

import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from backend.schemavault.audit import (
    FileAuditStorage,
    S3AuditStorage,
    SqliteAuditStorage,
    create_audit_entry,
    create_audit_storage,
)
from backend.schemavault.audit.storage import AUDIT_TABLE
from backend.schemavault.config import AuditSettings, S3Config
from backend.schemavault.storage import InMemoryStorage

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _entry(record_id="1", table="users", snapshot="h1", days_ago=0):
    return create_audit_entry(
        table_name=table,
        record_id=record_id,
        operation="UPDATE",
        old_data={"email": "old@example.com"},
        new_data={"email": "new@example.com"},
        snapshot=snapshot,
        changed_by="user:alice",
        metadata={"request_id": "r-1"},
        timestamp=NOW - timedelta(days=days_ago),
    )


class TestSqliteAuditStorage:
    """Tests for SqliteAuditStorage."""

    @pytest.fixture
    def db_path(self):
        """Create temporary database path."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir) / "audit.db"

    @pytest.fixture
    def storage(self, db_path):
        return SqliteAuditStorage(db_path)

    @pytest.mark.asyncio
    async def test_initialize_creates_table_and_indexes(self, storage, db_path):
        """Table and indexes exist after initialize."""
        await storage.initialize()

        conn = sqlite3.connect(str(db_path))
        try:
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
            indexes = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}
        finally:
            conn.close()

        assert AUDIT_TABLE in tables
        assert {
            "idx_audit_log_table_record",
            "idx_audit_log_timestamp",
            "idx_audit_log_operation",
            "idx_audit_log_snapshot",
        } <= indexes

    @pytest.mark.asyncio
    async def test_append_and_query(self, storage):
        """Appended entries come back intact."""
        await storage.initialize()
        entry = _entry()
        await storage.append(entry)

        assert await storage.query() == [entry]

    @pytest.mark.asyncio
    async def test_query_filters(self, storage):
        """Filters combine with AND; results are oldest first."""
        await storage.initialize()
        older = _entry("1", days_ago=2)
        newer = _entry("1", snapshot="h2", days_ago=1)
        other = _entry("2", table="posts")
        for e in (newer, other, older):
            await storage.append(e)

        assert await storage.query(table_name="users", record_id="1") == [older, newer]
        assert await storage.query(snapshot="h2") == [newer]
        assert await storage.query(limit=1) == [older]

    @pytest.mark.asyncio
    async def test_purge_expired(self, storage):
        """Entries past retention are removed."""
        await storage.initialize()
        await storage.append(_entry("old", days_ago=31))
        await storage.append(_entry("new", days_ago=29))

        removed = await storage.purge_expired(30, now=NOW)

        assert removed == 1
        assert [e.record_id for e in await storage.query()] == ["new"]


class TestFileAuditStorage:
    """Tests for FileAuditStorage."""

    @pytest.fixture
    def backing(self):
        return InMemoryStorage()

    @pytest.fixture
    def storage(self, backing):
        return FileAuditStorage(backing, "audit/audit.jsonl")

    @pytest.mark.asyncio
    async def test_append_writes_json_lines(self, storage, backing):
        """Each entry is one line."""
        await storage.initialize()
        await storage.append(_entry("1"))
        await storage.append(_entry("2"))

        lines = backing.read("audit/audit.jsonl").decode().splitlines()

        assert len(lines) == 2
        assert [e.record_id for e in await storage.query()] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_unreadable_lines_skipped(self, storage, backing):
        """Corrupt lines do not break queries."""
        await storage.append(_entry("1"))
        backing.write("audit/audit.jsonl", backing.read("audit/audit.jsonl") + b"{oops\n")

        assert [e.record_id for e in await storage.query()] == ["1"]

    @pytest.mark.asyncio
    async def test_purge_expired(self, storage):
        """Expired entries are rewritten out of the file."""
        await storage.append(_entry("old", days_ago=40))
        await storage.append(_entry("new", days_ago=1))

        assert await storage.purge_expired(30, now=NOW) == 1
        assert [e.record_id for e in await storage.query()] == ["new"]


class TestS3AuditStorage:
    """Tests for S3AuditStorage key layout."""

    def test_entry_key(self):
        """Keys are grouped by snapshot."""
        storage = S3AuditStorage(S3Config(bucket="b", audit_prefix="audit"))
        entry = _entry(snapshot="h3")

        key = storage.entry_key(entry)

        assert key.startswith("audit/snapshot=h3/2024-06-01T00-00-00+00-00_")
        assert key.endswith(f"{entry.id}.json")


class TestCreateAuditStorage:
    """Tests for create_audit_storage."""

    def test_database_requires_path(self):
        """Database storage without AUDIT_DB_PATH is rejected."""
        with pytest.raises(ValueError, match="AUDIT_DB_PATH"):
            create_audit_storage(AuditSettings(storage="database"), S3Config(), InMemoryStorage(), "/tmp")

    def test_s3_requires_bucket(self):
        """S3 storage without S3_BUCKET is rejected."""
        with pytest.raises(ValueError, match="S3_BUCKET"):
            create_audit_storage(AuditSettings(storage="s3"), S3Config(), InMemoryStorage(), "/tmp")

    def test_database_path_relative_to_state_root(self):
        """Relative database paths resolve below the state root."""
        backend = create_audit_storage(
            AuditSettings(storage="database", db_path="audit.db"),
            S3Config(),
            InMemoryStorage(),
            "/srv/app/.yama",
        )

        assert isinstance(backend, SqliteAuditStorage)
        assert backend.db_path == Path("/srv/app/.yama/audit.db")

    def test_file_and_s3_backends(self):
        """File and S3 kinds build their backends."""
        file_backend = create_audit_storage(AuditSettings(storage="file"), S3Config(), InMemoryStorage(), "/tmp")
        s3_backend = create_audit_storage(
            AuditSettings(storage="s3"), S3Config(bucket="audit-bucket"), InMemoryStorage(), "/tmp"
        )

        assert isinstance(file_backend, FileAuditStorage)
        assert isinstance(s3_backend, S3AuditStorage)
