"""
Audit module for schemavault.

Row-level mutation history tagged with the active schema snapshot:
- AuditLogger: policy filter + entry construction + append
- SqliteAuditStorage / FileAuditStorage / S3AuditStorage: backends

Invariants:
    - Entries are immutable once stored
    - Only the retention sweep removes entries
"""

from .log import (
    AuditConfig,
    AuditLogEntry,
    AuditLogger,
    AuditOperation,
    AuditStorageKind,
    TrackRule,
    create_audit_entry,
    is_audit_entry_expired,
    parse_retention_period,
    should_audit,
    to_audit_operation,
)
from .storage import (
    AuditStorage,
    FileAuditStorage,
    S3AuditStorage,
    SqliteAuditStorage,
    create_audit_storage,
)

__all__ = [
    "AuditConfig",
    "AuditLogEntry",
    "AuditLogger",
    "AuditOperation",
    "AuditStorageKind",
    "TrackRule",
    "create_audit_entry",
    "is_audit_entry_expired",
    "parse_retention_period",
    "should_audit",
    "to_audit_operation",
    "AuditStorage",
    "SqliteAuditStorage",
    "FileAuditStorage",
    "S3AuditStorage",
    "create_audit_storage",
]
