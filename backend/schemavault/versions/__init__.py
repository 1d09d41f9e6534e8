"""
Version module for schemavault.

Semantic versioning and entity-level diffs over recorded schemas.

Invariants:
    - Version history is append-only
    - Automatic numbering bumps the patch segment only
"""

from .ledger import (
    SchemaUnchangedError,
    SchemaVersion,
    SchemaVersionHistory,
    VersionDiff,
    VersionLedger,
    detect_changed_entities,
    next_patch_version,
    validate_version,
)

__all__ = [
    "SchemaVersion",
    "SchemaVersionHistory",
    "VersionDiff",
    "VersionLedger",
    "SchemaUnchangedError",
    "detect_changed_entities",
    "next_patch_version",
    "validate_version",
]
