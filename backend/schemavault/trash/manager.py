"""
Soft-delete holding area for migrations and data/schema snapshots.

Destructive operations move their artifacts here instead of deleting
them. Each trashed item keeps a sidecar metadata file recording where it
came from and until when it can be restored.

Layout:
    trash/<id>              - the trashed bytes
    trash/<id>.meta.json    - TrashEntry

Status is derived, never stored:
    restored_at set         -> restored
    now > expires_at        -> expired
    otherwise               -> active

Invariants:
    - active -> expired happens by wall clock alone
    - active -> restored only through restore_from_trash()
    - Expired entries cannot be restored
    - Purged entries are gone; nothing brings them back
    - Restored sidecars are kept until expires_at, then dropped by cleanup

How to change safely:
    - Keep restore and purge under the project lock
    - Add metadata fields as optional; old sidecars must stay readable
"""

from __future__ import annotations

import logging
import posixpath
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from ..retention import parse_iso, to_iso, utcnow
from ..storage.base import Storage, join_path, read_json, write_json

logger = logging.getLogger(__name__)

TRASH_DIR = "trash"
META_SUFFIX = ".meta.json"
DEFAULT_RETENTION_DAYS = 30


class TrashType(str, Enum):
    MIGRATION = "migration"
    DATA_SNAPSHOT = "data_snapshot"
    SCHEMA_SNAPSHOT = "schema_snapshot"


class TrashStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    RESTORED = "restored"


class TrashError(Exception):
    """Raised when a trash operation cannot be carried out."""

    def __init__(self, message: str, entry_id: str | None = None) -> None:
        self.entry_id = entry_id
        super().__init__(message)


@dataclass(frozen=True)
class TrashMetadata:
    """Type-specific context kept for troubleshooting."""

    migration_hash: str | None = None
    table_name: str | None = None
    row_count: int | None = None
    size_bytes: int | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in self.__dict__.items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TrashMetadata:
        data = data or {}
        return cls(
            migration_hash=data.get("migration_hash"),
            table_name=data.get("table_name"),
            row_count=data.get("row_count"),
            size_bytes=data.get("size_bytes"),
            reason=data.get("reason"),
        )


@dataclass(frozen=True)
class TrashEntry:
    """One trashed item.

    Attributes:
        id: "<epoch ms>_<name>"
        type: What kind of artifact was trashed
        name: Base name of the original key
        original_path: Storage key the item came from
        trash_path: Storage key it now lives at
        deleted_at: ISO-8601 time it was trashed
        expires_at: ISO-8601 time after which it cannot be restored
        metadata: Type-specific context
        restored_at: ISO-8601 time it was restored, if it was
    """

    id: str
    type: TrashType
    name: str
    original_path: str
    trash_path: str
    deleted_at: str
    expires_at: str
    metadata: TrashMetadata = field(default_factory=TrashMetadata)
    restored_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "original_path": self.original_path,
            "trash_path": self.trash_path,
            "deleted_at": self.deleted_at,
            "expires_at": self.expires_at,
            "metadata": self.metadata.to_dict(),
        }
        if self.restored_at is not None:
            result["restored_at"] = self.restored_at
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrashEntry:
        return cls(
            id=str(data["id"]),
            type=TrashType(data["type"]),
            name=str(data["name"]),
            original_path=str(data["original_path"]),
            trash_path=str(data["trash_path"]),
            deleted_at=str(data["deleted_at"]),
            expires_at=str(data["expires_at"]),
            metadata=TrashMetadata.from_dict(data.get("metadata")),
            restored_at=data.get("restored_at"),
        )


def calculate_expiration_date(
    retention_days: int = DEFAULT_RETENTION_DAYS,
    now: datetime | None = None,
) -> datetime:
    return (now or utcnow()) + timedelta(days=retention_days)


def is_expired(entry: TrashEntry, now: datetime | None = None) -> bool:
    """True once now is strictly past entry.expires_at."""
    return (now or utcnow()) > parse_iso(entry.expires_at)


def trash_status(entry: TrashEntry, now: datetime | None = None) -> TrashStatus:
    if entry.restored_at is not None:
        return TrashStatus.RESTORED
    if is_expired(entry, now):
        return TrashStatus.EXPIRED
    return TrashStatus.ACTIVE


class TrashManager:
    """Moves items into the trash, restores them and purges expired ones.

    Example:
        >>> trash = TrashManager(storage, retention_days=30)
        >>> entry = trash.move_to_trash("migrations/0003.sql", TrashType.MIGRATION)
        >>> trash.restore_from_trash(entry.id).original_path
        'migrations/0003.sql'
    """

    def __init__(
        self,
        storage: Storage,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        lock: threading.RLock | None = None,
    ) -> None:
        self.storage = storage
        self.retention_days = retention_days
        self._lock = lock or threading.RLock()

    def _meta_path(self, entry_id: str) -> str:
        return join_path(TRASH_DIR, f"{entry_id}{META_SUFFIX}")

    def _save_entry(self, entry: TrashEntry) -> None:
        write_json(self.storage, self._meta_path(entry.id), entry.to_dict())

    def move_to_trash(
        self,
        path: str,
        type: TrashType | str,
        metadata: TrashMetadata | None = None,
        now: datetime | None = None,
    ) -> TrashEntry:
        """Move the item at path into the trash.

        Args:
            path: Storage key of the item
            type: Kind of artifact
            metadata: Optional context
            now: Deletion time (defaults to current UTC time)

        Returns:
            The created TrashEntry

        Raises:
            TrashError: If nothing is stored at path
            StorageError: If the move cannot be written
        """
        deleted_at = now or utcnow()
        name = posixpath.basename(path.rstrip("/"))
        with self._lock:
            data = self.storage.read(path)
            if data is None:
                raise TrashError(f"File not found: {path}")

            stamp = int(deleted_at.timestamp() * 1000)
            while self.storage.exists(self._meta_path(f"{stamp}_{name}")):
                stamp += 1
            entry_id = f"{stamp}_{name}"

            trash_path = join_path(TRASH_DIR, entry_id)
            entry = TrashEntry(
                id=entry_id,
                type=TrashType(type),
                name=name,
                original_path=path,
                trash_path=trash_path,
                deleted_at=to_iso(deleted_at),
                expires_at=to_iso(calculate_expiration_date(self.retention_days, deleted_at)),
                metadata=metadata or TrashMetadata(),
            )
            self.storage.write(trash_path, data)
            self._save_entry(entry)
            self.storage.delete(path)

        logger.info(
            "Moved to trash",
            extra={"entry_id": entry.id, "original_path": path, "trash_type": entry.type.value},
        )
        return entry

    def get_entry(self, entry_id: str) -> TrashEntry | None:
        data = read_json(self.storage, self._meta_path(entry_id))
        if not isinstance(data, dict):
            return None
        try:
            return TrashEntry.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed trash entry {entry_id}: {e}")
            return None

    def restore_from_trash(self, entry_id: str, now: datetime | None = None) -> TrashEntry:
        """Put a trashed item back at its original path.

        Returns:
            The entry, marked restored

        Raises:
            TrashError: If the entry is missing, expired, already restored,
                or its bytes are gone
        """
        with self._lock:
            entry = self.get_entry(entry_id)
            if entry is None:
                raise TrashError(f"Trash entry not found: {entry_id}", entry_id)
            status = trash_status(entry, now)
            if status == TrashStatus.EXPIRED:
                raise TrashError(f"Trash entry expired: {entry_id}", entry_id)
            if status == TrashStatus.RESTORED:
                raise TrashError(f"Trash entry already restored: {entry_id}", entry_id)

            data = self.storage.read(entry.trash_path)
            if data is None:
                raise TrashError(f"Trash file not found: {entry.trash_path}", entry_id)

            self.storage.write(entry.original_path, data)
            self.storage.delete(entry.trash_path)
            entry = replace(entry, restored_at=to_iso(now or utcnow()))
            self._save_entry(entry)

        logger.info(
            "Restored from trash",
            extra={"entry_id": entry_id, "original_path": entry.original_path},
        )
        return entry

    def list_entries(self) -> list[TrashEntry]:
        """All entries, most recently deleted first."""
        entries = []
        for name in self.storage.list(TRASH_DIR):
            if not name.endswith(META_SUFFIX):
                continue
            entry = self.get_entry(name[: -len(META_SUFFIX)])
            if entry is not None:
                entries.append(entry)
        entries.sort(key=lambda entry: parse_iso(entry.deleted_at), reverse=True)
        return entries

    def permanently_delete(self, entry_id: str) -> None:
        """Purge an entry and its bytes.

        Raises:
            TrashError: If the entry does not exist
        """
        with self._lock:
            entry = self.get_entry(entry_id)
            if entry is None:
                raise TrashError(f"Trash entry not found: {entry_id}", entry_id)
            self.storage.delete(entry.trash_path)
            self.storage.delete(self._meta_path(entry_id))
        logger.info("Purged trash entry", extra={"entry_id": entry_id})

    def cleanup_expired(self, dry_run: bool = False, now: datetime | None = None) -> dict[str, int]:
        """Purge every expired (never restored) entry.

        Sidecars of restored entries are dropped once their expires_at has
        passed; they are not counted in the result.

        Args:
            dry_run: Only count what would be purged

        Returns:
            {"deleted": purged (or purgeable) count, "total": expired count}
        """
        entries = self.list_entries()
        expired = [e for e in entries if trash_status(e, now) == TrashStatus.EXPIRED]
        stale = [
            e for e in entries if trash_status(e, now) == TrashStatus.RESTORED and is_expired(e, now)
        ]
        deleted = 0
        for entry in expired:
            if not dry_run:
                self.permanently_delete(entry.id)
            deleted += 1
        if not dry_run:
            with self._lock:
                for entry in stale:
                    self.storage.delete(self._meta_path(entry.id))
        if expired or stale:
            logger.info(
                "Trash cleanup finished",
                extra={"deleted": deleted, "restored_released": len(stale), "dry_run": dry_run},
            )
        return {"deleted": deleted, "total": len(expired)}

    def get_stats(self, now: datetime | None = None) -> dict[str, int]:
        """Counts per status plus the bytes held in the trash."""
        entries = self.list_entries()
        counts = {status: 0 for status in TrashStatus}
        total_size = 0
        for entry in entries:
            status = trash_status(entry, now)
            counts[status] += 1
            if status != TrashStatus.RESTORED:
                total_size += self.storage.size(entry.trash_path)
        return {
            "total": len(entries),
            "active": counts[TrashStatus.ACTIVE],
            "expired": counts[TrashStatus.EXPIRED],
            "restored": counts[TrashStatus.RESTORED],
            "totalSize": total_size,
        }
