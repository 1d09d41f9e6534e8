"""
schemavault - schema version control and data-safety core.

Architecture:
    entities --hash--> Snapshot --manifest--> snapshots/
                           |
                           +--> VersionLedger (0.0.1, 0.0.2, ...)
                           +--> EnvironmentStateTracker (production -> H3)
                           +--> BackupManager (full + incremental chains)
    row mutations --> AuditLogger --> sqlite | file | s3
    destructive ops --> TrashManager / ShadowRegistry

Everything for one project hangs off a Project handle; components share
the project's storage backend and lock.

Invariants:
    - A snapshot hash depends only on the entities
    - Version history and audit entries are append-only
    - Read paths are fail-soft; write failures raise StorageError
"""

from ._version import __version__
from .config import VaultConfig
from .hashing import compute_checksum, compute_hash
from .project import Project
from .snapshots import Snapshot, SnapshotMetadata, SnapshotNotFoundError, SnapshotStore
from .state import EnvironmentStateTracker
from .storage import InMemoryStorage, LocalStorage, StorageError
from .versions import SchemaUnchangedError, VersionLedger

__all__ = [
    "__version__",
    "Project",
    "VaultConfig",
    "compute_hash",
    "compute_checksum",
    "Snapshot",
    "SnapshotMetadata",
    "SnapshotNotFoundError",
    "SnapshotStore",
    "EnvironmentStateTracker",
    "SchemaUnchangedError",
    "VersionLedger",
    "LocalStorage",
    "InMemoryStorage",
    "StorageError",
]
