"""
Content-addressed snapshot store for schema definitions.

A snapshot is an immutable capture of a project's entity definitions,
keyed by the hash of those entities. Snapshots link to their parent via
parent_hash, forming a hash chain much like a version-control object graph.

Layout (relative to the project state root):
    snapshots/<hash>.json     - full snapshot body
    snapshots/manifest.json   - ordered index of {hash, parentHash, metadata}

Invariants:
    - hash depends only on entities, never on metadata
    - Saving identical content twice is a no-op (one file, one manifest row)
    - Snapshot bodies are never rewritten once stored
    - Read paths never raise: missing or corrupt data reads as "not found"

How to change safely:
    - Add new metadata keys as optional; old manifests must still load
    - Never change the hashing mode of an existing store without rehashing
    - Deleting snapshots referenced by environments breaks promotion; use
      Project.collect_garbage which knows what is referenced
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..hashing import compute_hash
from ..retention import to_iso, utcnow
from ..storage.base import Storage, join_path, read_json, write_json

logger = logging.getLogger(__name__)

SNAPSHOTS_DIR = "snapshots"
MANIFEST_FILE = "manifest.json"


class SnapshotNotFoundError(Exception):
    """Raised when an operation requires a snapshot that is not stored."""

    pass


@dataclass(frozen=True)
class SnapshotMetadata:
    """Descriptive metadata attached to a snapshot.

    Attributes:
        created_at: ISO-8601 creation time
        created_by: Actor that captured the snapshot
        description: Optional free-form note
    """

    created_at: str
    created_by: str
    description: str | None = None

    @classmethod
    def now(cls, created_by: str, description: str | None = None) -> SnapshotMetadata:
        """Build metadata stamped with the current UTC time."""
        return cls(created_at=to_iso(utcnow()), created_by=created_by, description=description)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"createdAt": self.created_at, "createdBy": self.created_by}
        if self.description is not None:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotMetadata:
        return cls(
            created_at=str(data["createdAt"]),
            created_by=str(data.get("createdBy", "")),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time state of a schema.

    Attributes:
        hash: 64-hex digest of entities
        entities: Schema content (entity name -> definition)
        metadata: Creation metadata
        parent_hash: Hash of the snapshot this one was derived from
    """

    hash: str
    entities: dict[str, Any]
    metadata: SnapshotMetadata
    parent_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"hash": self.hash}
        if self.parent_hash is not None:
            result["parentHash"] = self.parent_hash
        result["entities"] = self.entities
        result["metadata"] = self.metadata.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        return cls(
            hash=str(data["hash"]),
            entities=dict(data["entities"]),
            metadata=SnapshotMetadata.from_dict(data["metadata"]),
            parent_hash=data.get("parentHash"),
        )


@dataclass(frozen=True)
class ManifestEntry:
    """One row of the snapshot manifest."""

    hash: str
    metadata: SnapshotMetadata
    parent_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"hash": self.hash, "metadata": self.metadata.to_dict()}
        if self.parent_hash is not None:
            result["parentHash"] = self.parent_hash
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifestEntry:
        return cls(
            hash=str(data["hash"]),
            metadata=SnapshotMetadata.from_dict(data["metadata"]),
            parent_hash=data.get("parentHash"),
        )


@dataclass
class SnapshotManifest:
    """Ordered index over every stored snapshot."""

    snapshots: list[ManifestEntry] = field(default_factory=list)

    def find(self, snapshot_hash: str) -> ManifestEntry | None:
        for entry in self.snapshots:
            if entry.hash == snapshot_hash:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"snapshots": [entry.to_dict() for entry in self.snapshots]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotManifest:
        return cls(snapshots=[ManifestEntry.from_dict(item) for item in data.get("snapshots", [])])


class SnapshotStore:
    """Persists immutable schema snapshots keyed by content hash.

    Attributes:
        storage: Backend holding snapshot bodies and the manifest
        canonical: Whether hashes are computed over key-sorted JSON

    Example:
        >>> store = SnapshotStore(LocalStorage("/srv/app/.yama"))
        >>> snap = store.create_snapshot(entities, SnapshotMetadata.now("ci"))
        >>> store.save_snapshot(snap)
        >>> store.load_snapshot(snap.hash) == snap
        True
    """

    def __init__(
        self,
        storage: Storage,
        canonical: bool = True,
        lock: threading.RLock | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            storage: Storage backend rooted at the project state dir
            canonical: Hash over key-sorted JSON (False keeps legacy order)
            lock: Project lock guarding manifest updates
        """
        self.storage = storage
        self.canonical = canonical
        self._lock = lock or threading.RLock()

    def _snapshot_path(self, snapshot_hash: str) -> str:
        return join_path(SNAPSHOTS_DIR, f"{snapshot_hash}.json")

    def _manifest_path(self) -> str:
        return join_path(SNAPSHOTS_DIR, MANIFEST_FILE)

    def compute_hash(self, entities: dict[str, Any]) -> str:
        """Hash entities with this store's hashing mode."""
        return compute_hash(entities, self.canonical)

    def create_snapshot(
        self,
        entities: dict[str, Any],
        metadata: SnapshotMetadata,
        parent_hash: str | None = None,
    ) -> Snapshot:
        """Build a snapshot for entities. Pure: nothing is persisted.

        Args:
            entities: Schema content
            metadata: Creation metadata (does not affect the hash)
            parent_hash: Optional parent link

        Returns:
            New Snapshot
        """
        return Snapshot(
            hash=self.compute_hash(entities),
            entities=entities,
            metadata=metadata,
            parent_hash=parent_hash,
        )

    def load_manifest(self) -> SnapshotManifest:
        """Load the manifest; missing or corrupt manifests read as empty."""
        data = read_json(self.storage, self._manifest_path())
        if not isinstance(data, dict):
            return SnapshotManifest()
        try:
            return SnapshotManifest.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed snapshot manifest: {e}")
            return SnapshotManifest()

    def _save_manifest(self, manifest: SnapshotManifest) -> None:
        write_json(self.storage, self._manifest_path(), manifest.to_dict())

    def save_snapshot(self, snapshot: Snapshot) -> bool:
        """Persist a snapshot and index it in the manifest.

        Args:
            snapshot: Snapshot to store

        Returns:
            True if the snapshot was written, False if it was already stored

        Raises:
            StorageError: If the backend write fails
        """
        with self._lock:
            manifest = self.load_manifest()
            body_exists = self.storage.exists(self._snapshot_path(snapshot.hash))
            if body_exists and manifest.find(snapshot.hash) is not None:
                logger.debug(f"Snapshot {snapshot.hash[:12]} already stored")
                return False

            if not body_exists:
                write_json(self.storage, self._snapshot_path(snapshot.hash), snapshot.to_dict())
            if manifest.find(snapshot.hash) is None:
                manifest.snapshots.append(
                    ManifestEntry(
                        hash=snapshot.hash,
                        metadata=snapshot.metadata,
                        parent_hash=snapshot.parent_hash,
                    )
                )
                self._save_manifest(manifest)

        logger.info(
            "Saved snapshot",
            extra={"hash": snapshot.hash, "parent_hash": snapshot.parent_hash},
        )
        return True

    def load_snapshot(self, snapshot_hash: str) -> Snapshot | None:
        """Load a snapshot by full hash, or None if missing or unparsable."""
        data = read_json(self.storage, self._snapshot_path(snapshot_hash))
        if not isinstance(data, dict):
            return None
        try:
            return Snapshot.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed snapshot {snapshot_hash}: {e}")
            return None

    def snapshot_exists(self, snapshot_hash: str) -> bool:
        return self.storage.exists(self._snapshot_path(snapshot_hash))

    def delete_snapshot(self, snapshot_hash: str) -> None:
        """Remove a snapshot body and its manifest row. Idempotent."""
        with self._lock:
            deleted = self.storage.delete(self._snapshot_path(snapshot_hash))
            manifest = self.load_manifest()
            remaining = [entry for entry in manifest.snapshots if entry.hash != snapshot_hash]
            if len(remaining) != len(manifest.snapshots):
                manifest.snapshots = remaining
                self._save_manifest(manifest)
        if deleted:
            logger.info("Deleted snapshot", extra={"hash": snapshot_hash})

    def get_all_snapshot_hashes(self) -> list[str]:
        """Hashes in manifest order."""
        return [entry.hash for entry in self.load_manifest().snapshots]

    def find_snapshot(self, partial_hash: str) -> str | None:
        """Resolve a hash prefix to the first matching manifest hash.

        Ambiguous prefixes are not disambiguated: the earliest manifest
        entry wins, so callers must supply enough characters.
        """
        if not partial_hash:
            return None
        for snapshot_hash in self.get_all_snapshot_hashes():
            if snapshot_hash.startswith(partial_hash):
                return snapshot_hash
        return None

    def get_snapshot_metadata(self, snapshot_hash: str) -> SnapshotMetadata | None:
        entry = self.load_manifest().find(snapshot_hash)
        return entry.metadata if entry else None

    def get_all_snapshots(self) -> list[Snapshot]:
        """Load every indexed snapshot, skipping bodies that fail to load."""
        snapshots = []
        for snapshot_hash in self.get_all_snapshot_hashes():
            snapshot = self.load_snapshot(snapshot_hash)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    def get_lineage(self, snapshot_hash: str) -> list[str]:
        """Walk parent links from a snapshot back to its root.

        Returns:
            Hashes starting with snapshot_hash, ending at the oldest ancestor
            still present in the manifest. Empty if snapshot_hash is unknown.
        """
        manifest = self.load_manifest()
        parents = {entry.hash: entry.parent_hash for entry in manifest.snapshots}
        lineage: list[str] = []
        seen: set[str] = set()
        current: str | None = snapshot_hash
        while current is not None and current in parents and current not in seen:
            lineage.append(current)
            seen.add(current)
            current = parents[current]
        return lineage

    def collect_garbage(self, keep: Iterable[str]) -> list[str]:
        """Delete every snapshot whose hash is not in keep.

        Args:
            keep: Hashes that must survive (e.g. referenced by environments)

        Returns:
            Hashes that were deleted
        """
        keep_set = set(keep)
        removed = []
        with self._lock:
            for snapshot_hash in self.get_all_snapshot_hashes():
                if snapshot_hash not in keep_set:
                    self.delete_snapshot(snapshot_hash)
                    removed.append(snapshot_hash)
        if removed:
            logger.info(f"Garbage collected {len(removed)} snapshot(s)")
        return removed
