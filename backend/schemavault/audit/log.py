"""
Audit trail of row-level data mutations.

Every mutating operation on an audited entity produces an immutable
AuditLogEntry tagged with the schema snapshot active when it happened,
so history can be queried per schema generation.

Invariants:
    - Entries are append-only; nothing here updates or overwrites one
    - Each entry carries the snapshot hash active at write time
    - Filtering is decided by AuditConfig before anything is built
    - Retention sweeps are the only path that removes entries

How to change safely:
    - Add new entry fields as optional; stored rows must stay readable
    - Keep operation names stable (INSERT/UPDATE/DELETE), storage indexes them
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from ..retention import (
    DEFAULT_RETENTION_DAYS,
    is_past_retention,
    parse_iso,
    parse_retention_days,
    to_iso,
    utcnow,
)

if TYPE_CHECKING:
    from .storage import AuditStorage

logger = logging.getLogger(__name__)


class AuditOperation(str, Enum):
    """Stored operation kinds."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AuditStorageKind(str, Enum):
    """Where audit entries are persisted."""

    DATABASE = "database"
    S3 = "s3"
    FILE = "file"


_OPERATION_MAP = {
    "create": AuditOperation.INSERT,
    "update": AuditOperation.UPDATE,
    "delete": AuditOperation.DELETE,
}


@dataclass(frozen=True)
class TrackRule:
    """Which operations of one entity are audited.

    Attributes:
        entity: Entity name
        operations: Subset of create/update/delete, or "all"
    """

    entity: str
    operations: tuple[str, ...] = ("all",)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackRule:
        return cls(entity=str(data["entity"]), operations=tuple(data.get("operations", ["all"])))


@dataclass(frozen=True)
class AuditConfig:
    """Audit policy of a project.

    Attributes:
        enabled: Master switch
        track: Per-entity rules; None means every entity and operation
        retention: Retention policy string such as "90d"
        storage: Backend kind for entries
    """

    enabled: bool = False
    track: tuple[TrackRule, ...] | None = None
    retention: str | None = None
    storage: AuditStorageKind = AuditStorageKind.DATABASE

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditConfig:
        track = data.get("track")
        return cls(
            enabled=bool(data.get("enabled", False)),
            track=tuple(TrackRule.from_dict(rule) for rule in track) if track is not None else None,
            retention=data.get("retention"),
            storage=AuditStorageKind(data.get("storage", "database")),
        )

    @property
    def retention_days(self) -> int | None:
        """Parsed retention, None when no retention is configured."""
        if not self.retention:
            return None
        return parse_retention_period(self.retention)


@dataclass(frozen=True)
class AuditLogEntry:
    """One recorded mutation.

    Attributes:
        id: UUID of the entry
        timestamp: ISO-8601 time of the mutation
        snapshot: Schema snapshot hash active at write time
        table_name: Table the row belongs to
        record_id: Primary key of the row
        operation: INSERT, UPDATE or DELETE
        old_data: Row before the change (None for INSERT)
        new_data: Row after the change (None for DELETE)
        changed_by: Actor that made the change
        changed_via: Surface the change came through (api, cli, ...)
        metadata: Extra context
    """

    id: str
    timestamp: str
    snapshot: str
    table_name: str
    record_id: str
    operation: AuditOperation
    old_data: dict[str, Any] | None = None
    new_data: dict[str, Any] | None = None
    changed_by: str | None = None
    changed_via: str | None = None
    metadata: dict[str, Any] | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "snapshot": self.snapshot,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "operation": self.operation.value,
            "old_data": self.old_data,
            "new_data": self.new_data,
            "changed_by": self.changed_by,
            "changed_via": self.changed_via,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditLogEntry:
        return cls(
            id=str(data["id"]),
            timestamp=str(data["timestamp"]),
            snapshot=str(data.get("snapshot") or ""),
            table_name=str(data["table_name"]),
            record_id=str(data["record_id"]),
            operation=AuditOperation(data["operation"]),
            old_data=data.get("old_data"),
            new_data=data.get("new_data"),
            changed_by=data.get("changed_by"),
            changed_via=data.get("changed_via"),
            metadata=data.get("metadata"),
        )


def should_audit(config: AuditConfig, entity: str, operation: str) -> bool:
    """Whether a create/update/delete on entity must be audited.

    Without a track list every entity is audited once auditing is enabled.
    """
    if not config.enabled:
        return False
    if config.track is None:
        return True
    for rule in config.track:
        if rule.entity == entity:
            return "all" in rule.operations or operation in rule.operations
    return False


def to_audit_operation(operation: str) -> AuditOperation:
    """Map create/update/delete to INSERT/UPDATE/DELETE.

    Raises:
        ValueError: For any other operation name
    """
    try:
        return _OPERATION_MAP[operation]
    except KeyError:
        raise ValueError(f"Unknown operation '{operation}'. Must be one of: create, update, delete")


def create_audit_entry(
    table_name: str,
    record_id: str,
    operation: AuditOperation | str,
    old_data: dict[str, Any] | None,
    new_data: dict[str, Any] | None,
    snapshot: str,
    changed_by: str | None = None,
    changed_via: str | None = None,
    metadata: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> AuditLogEntry:
    """Build an audit entry. Pure: persistence is the storage backend's job."""
    return AuditLogEntry(
        id=str(uuid.uuid4()),
        timestamp=to_iso(timestamp or utcnow()),
        snapshot=snapshot,
        table_name=table_name,
        record_id=str(record_id),
        operation=AuditOperation(operation),
        old_data=old_data,
        new_data=new_data,
        changed_by=changed_by,
        changed_via=changed_via,
        metadata=metadata,
    )


def parse_retention_period(retention: str) -> int:
    """Parse "90d" style retention into days, defaulting to 90 when unparsable."""
    days = parse_retention_days(retention)
    return days if days is not None else DEFAULT_RETENTION_DAYS


def is_audit_entry_expired(
    entry: AuditLogEntry,
    retention_days: int,
    now: datetime | None = None,
) -> bool:
    """True if the entry is older than retention_days."""
    return is_past_retention(parse_iso(entry.timestamp), retention_days, now)


class AuditLogger:
    """Applies the audit policy and appends entries to a storage backend.

    Attributes:
        config: Audit policy
        storage: Async audit storage backend
        snapshot_provider: Callable returning the active snapshot hash

    Example:
        >>> audit = AuditLogger(config, storage, lambda: project.current_snapshot("production"))
        >>> await audit.record("User", "update", "42", old_data=old, new_data=new)
    """

    def __init__(
        self,
        config: AuditConfig,
        storage: AuditStorage,
        snapshot_provider: Callable[[], str | None],
    ) -> None:
        self.config = config
        self.storage = storage
        self.snapshot_provider = snapshot_provider

    async def record(
        self,
        entity: str,
        operation: str,
        record_id: str,
        old_data: dict[str, Any] | None = None,
        new_data: dict[str, Any] | None = None,
        table_name: str | None = None,
        changed_by: str | None = None,
        changed_via: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry | None:
        """Audit one mutation if the policy asks for it.

        Args:
            entity: Entity name the policy is keyed on
            operation: create, update or delete
            record_id: Primary key of the row
            table_name: Storage table name (defaults to entity)

        Returns:
            The stored entry, or None if the mutation is not audited
        """
        if not should_audit(self.config, entity, operation):
            return None
        entry = create_audit_entry(
            table_name=table_name or entity,
            record_id=record_id,
            operation=to_audit_operation(operation),
            old_data=old_data,
            new_data=new_data,
            snapshot=self.snapshot_provider() or "",
            changed_by=changed_by,
            changed_via=changed_via,
            metadata=metadata,
        )
        await self.storage.append(entry)
        logger.debug(
            f"Audited {entry.operation.value} on {entry.table_name}:{entry.record_id}"
        )
        return entry

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Run the retention sweep; no-op when no retention is configured."""
        retention_days = self.config.retention_days
        if retention_days is None:
            return 0
        removed = await self.storage.purge_expired(retention_days, now)
        if removed:
            logger.info(
                "Purged expired audit entries",
                extra={"removed": removed, "retention_days": retention_days},
            )
        return removed
