"""
Backup bookkeeping for schema snapshots.

The manager records which backup artifact belongs to which snapshot,
when it was taken and how long it must be kept. Producing the data dump
itself is the caller's job; store_backup() only compresses, checksums
and files the bytes it is handed.

Layout:
    backups/snapshots/<snapshot>_<ts>.<ext>[.gz]   - full backups
    backups/incremental/<snapshot>_<ts>.<ext>[.gz] - incremental backups
    backups/manifests/<snapshot>_<ts>.json         - BackupMetadata
    backups/manifests/chain_<base>.json            - persisted BackupChain

Invariants:
    - One manifest per (snapshot, timestamp)
    - checksum covers the stored (possibly compressed) bytes
    - BackupChain.total_size == size + sum(incremental sizes)
    - Incrementals in a chain are in chronological order
    - A retention policy without a parsable duration never expires

How to change safely:
    - Manifest keys are camelCase; add new keys as optional
    - Keep the manifest filename scheme, load_backup_metadata depends on it
"""

from __future__ import annotations

import gzip
import logging
import re
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from ..config import BackupConfig
from ..hashing import compute_checksum
from ..retention import is_past_retention, parse_iso, parse_retention_days
from ..storage.base import Storage, join_path, read_json, write_json

logger = logging.getLogger(__name__)

BACKUPS_DIR = "backups"
FULL_DIR = join_path(BACKUPS_DIR, "snapshots")
INCREMENTAL_DIR = join_path(BACKUPS_DIR, "incremental")
MANIFESTS_DIR = join_path(BACKUPS_DIR, "manifests")
CHAIN_PREFIX = "chain_"

_TIMESTAMP_SEPARATORS = re.compile(r"[:.]")


class BackupTrigger(str, Enum):
    """What caused a backup to be taken."""

    SCHEMA_TRANSITION = "schema_transition"
    DATA_TRANSFORMATION = "data_transformation"
    SCHEDULE = "schedule"
    PRODUCTION_DEPLOY = "production_deploy"
    MANUAL = "manual"


class BackupType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class DatabaseInfo:
    """Database the backup was taken from."""

    provider: str
    version: str | None = None
    size: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"provider": self.provider}
        if self.version is not None:
            result["version"] = self.version
        if self.size is not None:
            result["size"] = self.size
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DatabaseInfo:
        return cls(
            provider=str(data["provider"]),
            version=data.get("version"),
            size=data.get("size"),
        )


@dataclass(frozen=True)
class CompressionInfo:
    algorithm: str
    level: int

    def to_dict(self) -> dict[str, Any]:
        return {"algorithm": self.algorithm, "level": self.level}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompressionInfo:
        return cls(algorithm=str(data["algorithm"]), level=int(data["level"]))


@dataclass(frozen=True)
class BackupMetadata:
    """Manifest of one backup artifact.

    Attributes:
        snapshot: Snapshot hash the backup was taken at
        timestamp: ISO-8601 time of the backup
        database: Source database info
        trigger: What caused the backup
        checksum: "sha256:<hex>" over the stored bytes
        retention_policy: Duration string such as "90d"
        tables: Per-table {rows, size}
        transition: Transition hash that caused the backup, if any
        compression: Algorithm and level of the stored bytes
        compressed_size: Size of the stored bytes when compressed
        backup_type: full or incremental
        base_snapshot: Chain base an incremental builds on
        changes: Tables/entities an incremental covers
        filename: Artifact filename (derived from snapshot/timestamp if None)
    """

    snapshot: str
    timestamp: str
    database: DatabaseInfo
    trigger: BackupTrigger
    checksum: str
    retention_policy: str
    tables: dict[str, dict[str, Any]] = field(default_factory=dict)
    transition: str | None = None
    compression: CompressionInfo | None = None
    compressed_size: int | None = None
    backup_type: BackupType = BackupType.FULL
    base_snapshot: str | None = None
    changes: tuple[str, ...] = ()
    filename: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "snapshot": self.snapshot,
            "timestamp": self.timestamp,
            "database": self.database.to_dict(),
            "tables": self.tables,
            "trigger": self.trigger.value,
            "checksum": self.checksum,
            "retentionPolicy": self.retention_policy,
            "backupType": self.backup_type.value,
        }
        if self.transition is not None:
            result["transition"] = self.transition
        if self.compression is not None:
            result["compression"] = self.compression.to_dict()
        if self.compressed_size is not None:
            result["compressedSize"] = self.compressed_size
        if self.base_snapshot is not None:
            result["baseSnapshot"] = self.base_snapshot
        if self.changes:
            result["changes"] = list(self.changes)
        if self.filename is not None:
            result["filename"] = self.filename
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupMetadata:
        compression = data.get("compression")
        compressed_size = data.get("compressedSize")
        return cls(
            snapshot=str(data["snapshot"]),
            timestamp=str(data["timestamp"]),
            database=DatabaseInfo.from_dict(data["database"]),
            tables=dict(data.get("tables", {})),
            trigger=BackupTrigger(data["trigger"]),
            checksum=str(data["checksum"]),
            retention_policy=str(data.get("retentionPolicy", "")),
            transition=data.get("transition"),
            compression=CompressionInfo.from_dict(compression) if compression else None,
            compressed_size=int(compressed_size) if compressed_size is not None else None,
            backup_type=BackupType(data.get("backupType", "full")),
            base_snapshot=data.get("baseSnapshot"),
            changes=tuple(data.get("changes", [])),
            filename=data.get("filename"),
        )


@dataclass(frozen=True)
class BackupEntry:
    """A registered backup as seen by the store."""

    filename: str
    metadata: BackupMetadata
    file_path: str
    size: int


@dataclass(frozen=True)
class IncrementalBackup:
    snapshot: str
    file: str
    size: int
    changes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot": self.snapshot,
            "file": self.file,
            "size": self.size,
            "changes": list(self.changes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IncrementalBackup:
        return cls(
            snapshot=str(data["snapshot"]),
            file=str(data["file"]),
            size=int(data.get("size", 0)),
            changes=tuple(data.get("changes", [])),
        )


@dataclass(frozen=True)
class BackupChain:
    """A full backup plus the incrementals that apply on top of it, in order.

    Sizes are in bytes.
    """

    base: str
    full_backup: str
    size: int
    incrementals: tuple[IncrementalBackup, ...] = ()

    @property
    def total_size(self) -> int:
        return self.size + sum(inc.size for inc in self.incrementals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "base": self.base,
            "fullBackup": self.full_backup,
            "size": self.size,
            "incrementals": [inc.to_dict() for inc in self.incrementals],
            "totalSize": self.total_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupChain:
        return cls(
            base=str(data["base"]),
            full_backup=str(data["fullBackup"]),
            size=int(data.get("size", 0)),
            incrementals=tuple(
                IncrementalBackup.from_dict(inc) for inc in data.get("incrementals", [])
            ),
        )


def generate_backup_filename(snapshot: str, timestamp: str, extension: str = "dump") -> str:
    """Artifact filename for a snapshot and ISO timestamp.

    Example:
        >>> generate_backup_filename("abc123", "2024-01-15T10:30:00.000Z")
        'abc123_2024-01-15_10-30-00-000Z.dump'
    """
    ts = _TIMESTAMP_SEPARATORS.sub("-", timestamp).replace("T", "_", 1)
    return f"{snapshot}_{ts}.{extension}"


def calculate_checksum(data: bytes | str) -> str:
    """Checksum of backup bytes as "sha256:<hex>"."""
    return compute_checksum(data)


def is_backup_expired(metadata: BackupMetadata, now: datetime | None = None) -> bool:
    """Whether a backup is past its retention policy.

    Policies without a parsable duration never expire.
    """
    retention_days = parse_retention_days(metadata.retention_policy)
    if retention_days is None:
        return False
    try:
        taken_at = parse_iso(metadata.timestamp)
    except ValueError:
        logger.warning(f"Backup {metadata.snapshot} has unparsable timestamp {metadata.timestamp!r}")
        return False
    return is_past_retention(taken_at, retention_days, now)


def format_bytes(num_bytes: int) -> str:
    """Human-readable size, e.g. 1536 -> "1.50 KB"."""
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{value:.2f} {units[unit]}"


def _taken_at(entry: BackupEntry) -> datetime:
    return parse_iso(entry.metadata.timestamp)


def _manifest_name(snapshot: str, timestamp: str) -> str:
    return f"{snapshot}_{_TIMESTAMP_SEPARATORS.sub('-', timestamp)}.json"


class BackupManager:
    """Registers, lists, chains and expires backups of a project.

    Attributes:
        storage: Backend rooted at the project state dir
        config: Compression and naming defaults

    Example:
        >>> manager = BackupManager(storage)
        >>> entry = manager.store_backup(metadata, dump_bytes)
        >>> manager.verify_backup(entry)
        True
        >>> manager.create_backup_chain(metadata.snapshot).total_size
        1150
    """

    def __init__(
        self,
        storage: Storage,
        config: BackupConfig | None = None,
        lock: threading.RLock | None = None,
    ) -> None:
        self.storage = storage
        self.config = config or BackupConfig()
        self._lock = lock or threading.RLock()

    def ensure_backup_dirs(self) -> None:
        for directory in (FULL_DIR, INCREMENTAL_DIR, MANIFESTS_DIR):
            self.storage.mkdir(directory)

    def _artifact_path(self, metadata: BackupMetadata, filename: str) -> str:
        directory = INCREMENTAL_DIR if metadata.backup_type == BackupType.INCREMENTAL else FULL_DIR
        return join_path(directory, filename)

    def _filename_for(self, metadata: BackupMetadata) -> str:
        return metadata.filename or generate_backup_filename(
            metadata.snapshot, metadata.timestamp, self.config.extension
        )

    def register_backup(self, metadata: BackupMetadata, filename: str) -> BackupMetadata:
        """Write the manifest associating a snapshot and timestamp with a file.

        Backups registered without a retention policy get the configured
        default.

        Returns:
            The metadata as stored (with filename filled in)
        """
        metadata = replace(metadata, filename=filename)
        if not metadata.retention_policy:
            metadata = replace(metadata, retention_policy=self.config.retention_policy)
        self.ensure_backup_dirs()
        write_json(
            self.storage,
            join_path(MANIFESTS_DIR, _manifest_name(metadata.snapshot, metadata.timestamp)),
            metadata.to_dict(),
        )
        logger.info(
            "Registered backup",
            extra={
                "snapshot": metadata.snapshot,
                "backup_file": filename,
                "backup_type": metadata.backup_type.value,
                "trigger": metadata.trigger.value,
            },
        )
        return metadata

    def load_backup_metadata(self, snapshot: str, timestamp: str) -> BackupMetadata | None:
        """Manifest for (snapshot, timestamp); None if absent or unreadable."""
        data = read_json(self.storage, join_path(MANIFESTS_DIR, _manifest_name(snapshot, timestamp)))
        if not isinstance(data, dict):
            return None
        try:
            return BackupMetadata.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed backup manifest for {snapshot}@{timestamp}: {e}")
            return None

    def _entry_for(self, metadata: BackupMetadata) -> BackupEntry:
        filename = self._filename_for(metadata)
        file_path = self._artifact_path(metadata, filename)
        return BackupEntry(
            filename=filename,
            metadata=metadata,
            file_path=file_path,
            size=self.storage.size(file_path),
        )

    def list_backups(self) -> list[BackupEntry]:
        """All registered backups, newest first. Unreadable manifests are skipped."""
        entries = []
        for name in self.storage.list(MANIFESTS_DIR):
            if not name.endswith(".json") or name.startswith(CHAIN_PREFIX):
                continue
            data = read_json(self.storage, join_path(MANIFESTS_DIR, name))
            if not isinstance(data, dict):
                continue
            try:
                metadata = BackupMetadata.from_dict(data)
                parse_iso(metadata.timestamp)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed backup manifest {name}: {e}")
                continue
            entries.append(self._entry_for(metadata))
        entries.sort(key=_taken_at, reverse=True)
        return entries

    def get_backups_for_snapshot(self, snapshot: str) -> list[BackupEntry]:
        return [entry for entry in self.list_backups() if entry.metadata.snapshot == snapshot]

    def create_backup_chain(self, base_snapshot: str) -> BackupChain | None:
        """Full backup of base_snapshot plus the incrementals built on it.

        The newest full backup of the base is used; incrementals that name
        it as base and were taken after it follow in chronological order.

        Returns:
            BackupChain, or None if the base has no full backup
        """
        backups = self.list_backups()
        full = next(
            (
                entry
                for entry in backups
                if entry.metadata.snapshot == base_snapshot
                and entry.metadata.backup_type == BackupType.FULL
            ),
            None,
        )
        if full is None:
            return None

        incrementals = sorted(
            (
                entry
                for entry in backups
                if entry.metadata.backup_type == BackupType.INCREMENTAL
                and entry.metadata.base_snapshot == base_snapshot
                and _taken_at(entry) >= _taken_at(full)
            ),
            key=_taken_at,
        )
        return BackupChain(
            base=base_snapshot,
            full_backup=full.filename,
            size=full.size,
            incrementals=tuple(
                IncrementalBackup(
                    snapshot=entry.metadata.snapshot,
                    file=entry.filename,
                    size=entry.size,
                    changes=entry.metadata.changes,
                )
                for entry in incrementals
            ),
        )

    def save_backup_chain(self, chain: BackupChain) -> str:
        """Persist a chain descriptor.

        Returns:
            Chain filename, usable with load_backup_chain()
        """
        chain_file = f"{CHAIN_PREFIX}{chain.base}.json"
        with self._lock:
            self.ensure_backup_dirs()
            write_json(self.storage, join_path(MANIFESTS_DIR, chain_file), chain.to_dict())
        return chain_file

    def load_backup_chain(self, chain_file: str) -> BackupChain | None:
        data = read_json(self.storage, join_path(MANIFESTS_DIR, chain_file))
        if not isinstance(data, dict):
            return None
        try:
            return BackupChain.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed backup chain {chain_file}: {e}")
            return None

    def calculate_backup_size(self) -> int:
        """Total bytes across all registered backups."""
        return sum(entry.size for entry in self.list_backups())

    def get_expired_backups(self, now: datetime | None = None) -> list[BackupEntry]:
        return [entry for entry in self.list_backups() if is_backup_expired(entry.metadata, now)]

    def store_backup(
        self,
        metadata: BackupMetadata,
        data: bytes,
        compress: bool | None = None,
    ) -> BackupEntry:
        """Write a backup artifact and register it.

        Args:
            metadata: Metadata of the backup (checksum is recomputed)
            data: Raw dump bytes
            compress: Override config compression

        Returns:
            The registered BackupEntry

        Raises:
            StorageError: If the artifact or manifest cannot be written
        """
        if compress is None:
            compress = self.config.compression == "gzip"

        filename = generate_backup_filename(
            metadata.snapshot, metadata.timestamp, self.config.extension
        )
        if compress:
            stored = gzip.compress(data, compresslevel=self.config.compression_level)
            filename = f"{filename}.gz"
            metadata = replace(
                metadata,
                compression=CompressionInfo("gzip", self.config.compression_level),
                compressed_size=len(stored),
            )
        else:
            stored = data
            metadata = replace(metadata, compression=None, compressed_size=None)

        metadata = replace(metadata, checksum=calculate_checksum(stored))
        self.storage.write(self._artifact_path(metadata, filename), stored)
        metadata = self.register_backup(metadata, filename)
        return self._entry_for(metadata)

    def read_backup(self, entry: BackupEntry) -> bytes | None:
        """Raw dump bytes of a backup (decompressed); None if the artifact is missing."""
        stored = self.storage.read(entry.file_path)
        if stored is None:
            return None
        compression = entry.metadata.compression
        if compression is not None and compression.algorithm == "gzip":
            return gzip.decompress(stored)
        return stored

    def verify_backup(self, entry: BackupEntry) -> bool:
        """Whether the stored artifact matches its recorded checksum."""
        stored = self.storage.read(entry.file_path)
        if stored is None:
            logger.warning(f"Backup artifact missing: {entry.file_path}")
            return False
        valid = calculate_checksum(stored) == entry.metadata.checksum
        if not valid:
            logger.warning(f"Backup checksum mismatch: {entry.file_path}")
        return valid

    def delete_backup(self, entry: BackupEntry) -> None:
        """Remove a backup's artifact and manifest. Idempotent."""
        with self._lock:
            self.storage.delete(entry.file_path)
            self.storage.delete(
                join_path(
                    MANIFESTS_DIR,
                    _manifest_name(entry.metadata.snapshot, entry.metadata.timestamp),
                )
            )
        logger.info(
            "Deleted backup",
            extra={"snapshot": entry.metadata.snapshot, "backup_file": entry.filename},
        )

    def prune_expired(self, now: datetime | None = None) -> list[BackupEntry]:
        """Delete every expired backup.

        Returns:
            The deleted entries
        """
        expired = self.get_expired_backups(now)
        for entry in expired:
            self.delete_backup(entry)
        if expired:
            logger.info(
                "Pruned expired backups",
                extra={
                    "removed": len(expired),
                    "freed": format_bytes(sum(e.size for e in expired)),
                },
            )
        return expired
