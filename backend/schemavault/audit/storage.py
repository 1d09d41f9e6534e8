"""
Audit entry storage backends.

Entries produced by the audit log are persisted by one of three backends,
selected by AuditConfig.storage:

- database: SQLite table ``_yama_audit_log`` (one row per entry)
- file:     JSON-lines file in the project state dir
- s3:       one JSON object per entry, keyed by snapshot and time

S3 layout:
    s3://<bucket>/<audit_prefix>/snapshot=<hash>/<timestamp>_<id>.json

Invariants:
    - append() never updates an existing entry
    - purge_expired() is the only deletion path
    - Query results are ordered oldest first

How to change safely:
    - Table changes must be additive (new nullable columns, new indexes)
    - Keep the S3 key layout stable; listing by snapshot depends on it
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..retention import parse_iso, to_iso, utcnow
from ..storage.base import Storage
from .log import AuditLogEntry, AuditStorageKind, is_audit_entry_expired

if TYPE_CHECKING:
    from ..config import AuditSettings, S3Config

logger = logging.getLogger(__name__)

# Try to import aiobotocore for S3
try:
    from aiobotocore.session import get_session

    S3_AVAILABLE = True
except ImportError:
    S3_AVAILABLE = False
    get_session = None

AUDIT_TABLE = "_yama_audit_log"


@runtime_checkable
class AuditStorage(Protocol):
    """Protocol for audit storage backends."""

    async def initialize(self) -> None:
        """Prepare the backend (create tables, directories)."""
        ...

    async def append(self, entry: AuditLogEntry) -> None:
        """Persist one entry."""
        ...

    async def query(
        self,
        table_name: str | None = None,
        record_id: str | None = None,
        snapshot: str | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        """Entries matching all given filters, oldest first."""
        ...

    async def purge_expired(self, retention_days: int, now: datetime | None = None) -> int:
        """Delete entries older than the retention window.

        Returns:
            Number of entries removed
        """
        ...


def _matches(
    entry: AuditLogEntry,
    table_name: str | None,
    record_id: str | None,
    snapshot: str | None,
) -> bool:
    if table_name is not None and entry.table_name != table_name:
        return False
    if record_id is not None and entry.record_id != record_id:
        return False
    if snapshot is not None and entry.snapshot != snapshot:
        return False
    return True


class SqliteAuditStorage:
    """Audit entries in a SQLite table.

    Table schema:
        _yama_audit_log:
            - id TEXT PRIMARY KEY
            - timestamp TEXT (ISO-8601 UTC)
            - snapshot TEXT
            - table_name TEXT
            - record_id TEXT
            - operation TEXT
            - old_data TEXT (JSON)
            - new_data TEXT (JSON)
            - changed_by TEXT
            - changed_via TEXT
            - metadata TEXT (JSON)

    Example:
        >>> storage = SqliteAuditStorage("/srv/app/.yama/audit.db")
        >>> await storage.initialize()
        >>> await storage.append(entry)
    """

    def __init__(self, db_path: str | Path, busy_timeout_ms: int = 5000) -> None:
        """Initialize the backend.

        Args:
            db_path: SQLite database file
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection with the audit pragmas applied."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS {AUDIT_TABLE} (
                id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                snapshot TEXT,
                table_name TEXT NOT NULL,
                record_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                old_data TEXT,
                new_data TEXT,
                changed_by TEXT,
                changed_via TEXT,
                metadata TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_audit_log_table_record
                ON {AUDIT_TABLE}(table_name, record_id);
            CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON {AUDIT_TABLE}(timestamp);
            CREATE INDEX IF NOT EXISTS idx_audit_log_operation ON {AUDIT_TABLE}(operation);
            CREATE INDEX IF NOT EXISTS idx_audit_log_snapshot ON {AUDIT_TABLE}(snapshot);
        """)

    async def initialize(self) -> None:
        async with self._lock:
            with self._get_connection() as conn:
                self._create_schema(conn)
        logger.info(f"Initialized audit table in {self.db_path}")

    async def append(self, entry: AuditLogEntry) -> None:
        with self._get_connection() as conn:
            conn.execute(
                f"""
                INSERT INTO {AUDIT_TABLE} (id, timestamp, snapshot, table_name, record_id,
                                           operation, old_data, new_data, changed_by,
                                           changed_via, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.timestamp,
                    entry.snapshot,
                    entry.table_name,
                    entry.record_id,
                    entry.operation.value,
                    _dump_optional(entry.old_data),
                    _dump_optional(entry.new_data),
                    entry.changed_by,
                    entry.changed_via,
                    _dump_optional(entry.metadata),
                ),
            )

    async def query(
        self,
        table_name: str | None = None,
        record_id: str | None = None,
        snapshot: str | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        clauses = []
        params: list[Any] = []
        for column, value in (
            ("table_name", table_name),
            ("record_id", record_id),
            ("snapshot", snapshot),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        sql = f"SELECT * FROM {AUDIT_TABLE}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp ASC, rowid ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_entry(row) for row in rows]

    async def purge_expired(self, retention_days: int, now: datetime | None = None) -> int:
        cutoff = to_iso((now or utcnow()) - timedelta(days=retention_days))
        with self._get_connection() as conn:
            cursor = conn.execute(f"DELETE FROM {AUDIT_TABLE} WHERE timestamp < ?", (cutoff,))
            return cursor.rowcount


class FileAuditStorage:
    """Audit entries as JSON lines in a project storage file.

    Each append rewrites the file through the storage backend, so this
    backend suits low-volume projects; use database storage otherwise.
    """

    def __init__(self, storage: Storage, path: str = "audit/audit.jsonl") -> None:
        self.storage = storage
        self.path = path
        self._lock = asyncio.Lock()

    def _read_all(self) -> list[AuditLogEntry]:
        raw = self.storage.read(self.path)
        if raw is None:
            return []
        entries = []
        for line_no, line in enumerate(raw.decode("utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(AuditLogEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable audit line {line_no} in {self.path}: {e}")
        return entries

    def _write_all(self, entries: list[AuditLogEntry]) -> None:
        body = "".join(json.dumps(entry.to_dict()) + "\n" for entry in entries)
        self.storage.write(self.path, body.encode("utf-8"))

    async def initialize(self) -> None:
        if not self.storage.exists(self.path):
            self.storage.write(self.path, b"")

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            existing = self.storage.read(self.path) or b""
            line = json.dumps(entry.to_dict()) + "\n"
            self.storage.write(self.path, existing + line.encode("utf-8"))

    async def query(
        self,
        table_name: str | None = None,
        record_id: str | None = None,
        snapshot: str | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        matches = [e for e in self._read_all() if _matches(e, table_name, record_id, snapshot)]
        return matches[:limit] if limit is not None else matches

    async def purge_expired(self, retention_days: int, now: datetime | None = None) -> int:
        async with self._lock:
            entries = self._read_all()
            kept = [e for e in entries if not is_audit_entry_expired(e, retention_days, now)]
            removed = len(entries) - len(kept)
            if removed:
                self._write_all(kept)
            return removed


class S3AuditStorage:
    """Audit entries as individual S3 objects.

    Attributes:
        s3_config: S3 configuration (bucket, region, prefix, credentials)
    """

    def __init__(self, s3_config: S3Config) -> None:
        self.s3_config = s3_config

    def _client_kwargs(self) -> dict[str, Any]:
        client_kwargs: dict[str, Any] = {"region_name": self.s3_config.region}
        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url
        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key
        return client_kwargs

    def _client(self) -> Any:
        if not S3_AVAILABLE:
            raise RuntimeError("aiobotocore is required for S3 audit storage")
        return get_session().create_client("s3", **self._client_kwargs())

    def entry_key(self, entry: AuditLogEntry) -> str:
        """Object key for an entry."""
        stamp = entry.timestamp.replace(":", "-")
        snapshot = entry.snapshot or "none"
        return f"{self.s3_config.audit_prefix}/snapshot={snapshot}/{stamp}_{entry.id}.json"

    def _list_prefix(self, snapshot: str | None) -> str:
        if snapshot is not None:
            return f"{self.s3_config.audit_prefix}/snapshot={snapshot or 'none'}/"
        return f"{self.s3_config.audit_prefix}/"

    async def initialize(self) -> None:
        if not S3_AVAILABLE:
            raise RuntimeError("aiobotocore is required for S3 audit storage")

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._client() as s3:
            await s3.put_object(
                Bucket=self.s3_config.bucket,
                Key=self.entry_key(entry),
                Body=json.dumps(entry.to_dict()).encode("utf-8"),
                ContentType="application/json",
            )

    async def _iter_entries(self, s3: Any, snapshot: str | None) -> list[tuple[str, AuditLogEntry]]:
        found = []
        paginator = s3.get_paginator("list_objects_v2")
        async for page in paginator.paginate(
            Bucket=self.s3_config.bucket, Prefix=self._list_prefix(snapshot)
        ):
            for obj in page.get("Contents", []):
                if not obj["Key"].endswith(".json"):
                    continue
                response = await s3.get_object(Bucket=self.s3_config.bucket, Key=obj["Key"])
                content = await response["Body"].read()
                try:
                    entry = AuditLogEntry.from_dict(json.loads(content.decode("utf-8")))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"Skipping unreadable audit object {obj['Key']}: {e}")
                    continue
                found.append((obj["Key"], entry))
        return found

    async def query(
        self,
        table_name: str | None = None,
        record_id: str | None = None,
        snapshot: str | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        async with self._client() as s3:
            found = await self._iter_entries(s3, snapshot)
        entries = sorted(
            (e for _, e in found if _matches(e, table_name, record_id, snapshot)),
            key=lambda e: parse_iso(e.timestamp),
        )
        return entries[:limit] if limit is not None else entries

    async def purge_expired(self, retention_days: int, now: datetime | None = None) -> int:
        removed = 0
        async with self._client() as s3:
            for key, entry in await self._iter_entries(s3, None):
                if is_audit_entry_expired(entry, retention_days, now):
                    await s3.delete_object(Bucket=self.s3_config.bucket, Key=key)
                    removed += 1
        return removed


def create_audit_storage(
    settings: AuditSettings,
    s3_config: S3Config,
    storage: Storage,
    state_root: str | Path,
) -> AuditStorage:
    """Build the backend selected by AUDIT_STORAGE.

    Args:
        settings: Audit settings
        s3_config: S3 configuration, used for s3 storage
        storage: Project storage, used for file storage
        state_root: Project state directory; relative AUDIT_DB_PATH resolves here

    Raises:
        ValueError: If required configuration for the selected backend is missing
    """
    kind = AuditStorageKind(settings.storage)
    if kind == AuditStorageKind.DATABASE:
        if not settings.db_path:
            raise ValueError("AUDIT_DB_PATH is required when AUDIT_STORAGE=database")
        db_path = Path(settings.db_path)
        if not db_path.is_absolute():
            db_path = Path(state_root) / db_path
        return SqliteAuditStorage(db_path)
    if kind == AuditStorageKind.S3:
        if not s3_config.bucket:
            raise ValueError("S3_BUCKET is required when AUDIT_STORAGE=s3")
        return S3AuditStorage(s3_config)
    return FileAuditStorage(storage, settings.file_path)


def _dump_optional(value: dict[str, Any] | None) -> str | None:
    return json.dumps(value) if value is not None else None


def _load_optional(value: str | None) -> dict[str, Any] | None:
    return json.loads(value) if value else None


def _row_to_entry(row: sqlite3.Row) -> AuditLogEntry:
    return AuditLogEntry.from_dict(
        {
            "id": row["id"],
            "timestamp": row["timestamp"],
            "snapshot": row["snapshot"],
            "table_name": row["table_name"],
            "record_id": row["record_id"],
            "operation": row["operation"],
            "old_data": _load_optional(row["old_data"]),
            "new_data": _load_optional(row["new_data"]),
            "changed_by": row["changed_by"],
            "changed_via": row["changed_via"],
            "metadata": _load_optional(row["metadata"]),
        }
    )
