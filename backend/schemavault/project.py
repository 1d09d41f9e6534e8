"""
Project context: one handle per project state directory.

A Project owns the storage backend, the per-project lock and one
instance of every component, all bound to the same state root. Multiple
projects can be open in one process; nothing here is module-global
except the lock registry.

Invariants:
    - All components of a project share one storage handle and one lock
    - An environment only ever points at a stored snapshot (promote checks)
    - Garbage collection keeps every snapshot an environment or version
      references

How to change safely:
    - New components take (storage, lock) and are built in __init__
    - Cross-component operations belong here, not in the components
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .audit import AuditLogger, AuditStorage, create_audit_storage
from .backups import BackupManager
from .config import VaultConfig
from .locking import project_lock
from .snapshots import Snapshot, SnapshotMetadata, SnapshotNotFoundError, SnapshotStore, TransitionStore
from .state import EnvironmentState, EnvironmentStateTracker
from .storage import LocalStorage, Storage
from .trash import ShadowRegistry, TrashManager
from .versions import VersionLedger

logger = logging.getLogger(__name__)


class Project:
    """All schemavault state of one project.

    Attributes:
        root: Project directory
        state_root: Directory holding schemavault state (root / state_dir)
        config: Configuration in effect
        storage: Backend rooted at state_root

    Example:
        >>> project = Project("/srv/app")
        >>> snap = project.save_schema(entities, created_by="ci")
        >>> project.versions.record_schema_version(entities)
        >>> project.promote("production", snap.hash)
    """

    def __init__(
        self,
        root: str | Path,
        config: VaultConfig | None = None,
        storage: Storage | None = None,
    ) -> None:
        self.root = Path(root)
        self.config = config or VaultConfig()
        self.state_root = self.root / self.config.storage.state_dir
        self.storage = storage if storage is not None else LocalStorage(self.state_root)
        self.lock = project_lock(self.state_root)

        canonical = self.config.hashing.canonical
        self.snapshots = SnapshotStore(self.storage, canonical=canonical, lock=self.lock)
        self.transitions = TransitionStore(self.storage)
        self.versions = VersionLedger(self.storage, canonical=canonical, lock=self.lock)
        self.environments = EnvironmentStateTracker(self.storage, lock=self.lock)
        self.backups = BackupManager(self.storage, config=self.config.backup, lock=self.lock)
        self.trash = TrashManager(
            self.storage, retention_days=self.config.trash.retention_days, lock=self.lock
        )
        self.shadows = ShadowRegistry(self.storage, lock=self.lock)

    def __repr__(self) -> str:
        return f"Project(root={str(self.root)!r})"

    def save_schema(
        self,
        entities: dict[str, Any],
        created_by: str,
        description: str | None = None,
        environment: str | None = None,
    ) -> Snapshot:
        """Snapshot entities and store the snapshot.

        Args:
            entities: Schema content
            created_by: Actor creating the snapshot
            description: Optional note
            environment: If given, the snapshot is parented on that
                environment's current snapshot

        Returns:
            The stored Snapshot (existing content is not rewritten)
        """
        parent = self.environments.get_current_snapshot(environment) if environment else None
        snapshot = self.snapshots.create_snapshot(
            entities,
            SnapshotMetadata.now(created_by, description),
            parent_hash=parent if parent != self.snapshots.compute_hash(entities) else None,
        )
        self.snapshots.save_snapshot(snapshot)
        return snapshot

    def promote(self, environment: str, snapshot_hash: str) -> EnvironmentState:
        """Point an environment at a stored snapshot.

        Args:
            environment: Environment name
            snapshot_hash: Full hash or unambiguous prefix

        Raises:
            SnapshotNotFoundError: If no stored snapshot matches
        """
        with self.lock:
            resolved = snapshot_hash
            if not self.snapshots.snapshot_exists(resolved):
                resolved = self.snapshots.find_snapshot(snapshot_hash)
            if resolved is None or not self.snapshots.snapshot_exists(resolved):
                raise SnapshotNotFoundError(snapshot_hash)
            return self.environments.update_state(environment, resolved)

    def current_snapshot(self, environment: str) -> str | None:
        return self.environments.get_current_snapshot(environment)

    def referenced_snapshots(self) -> set[str]:
        """Hashes referenced by an environment pointer or a recorded version."""
        referenced = {
            state.current_snapshot
            for state in self.environments.get_all_states()
            if state.current_snapshot
        }
        referenced.update(version.hash for version in self.versions.list_schema_versions())
        return referenced

    def collect_garbage(self) -> list[str]:
        """Delete snapshots nothing references.

        Returns:
            Hashes that were deleted
        """
        with self.lock:
            return self.snapshots.collect_garbage(self.referenced_snapshots())

    def audit_storage(self) -> AuditStorage:
        """Audit backend selected by configuration.

        Raises:
            ValueError: If the selected backend is missing required config
        """
        return create_audit_storage(self.config.audit, self.config.s3, self.storage, self.state_root)

    def audit_logger(self, environment: str, storage: AuditStorage | None = None) -> AuditLogger:
        """Audit logger tagging entries with the environment's current snapshot."""
        return AuditLogger(
            self.config.audit.to_audit_config(),
            storage if storage is not None else self.audit_storage(),
            lambda: self.current_snapshot(environment),
        )
