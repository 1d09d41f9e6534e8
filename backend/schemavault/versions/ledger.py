"""
Schema version ledger.

The ledger assigns semantic version numbers to successive schema states
and records which entities changed in each. It is layered beside the
snapshot store: versions reference schema hashes, and the full entity
set of every version is archived under its version string so it can be
retrieved by name.

Layout:
    versions/history.json               - SchemaVersionHistory
    versions/snapshots/<version>.json   - entities archived per version

Invariants:
    - history.versions is append-only; entries are never edited
    - changed_entities is computed once, when the version is recorded
    - Recording an unchanged schema fails with SchemaUnchangedError
    - Automatic numbering only bumps the patch segment
    - Version strings are archive keys: no path separators, no ".."
    - Automatic numbering skips versions already recorded explicitly

How to change safely:
    - Never rewrite archived version files; diffs depend on them
    - Keep record_schema_version under the project lock; it is a
      load-mutate-save cycle
    - If major/minor inference is ever added, make it opt-in so existing
      numbering stays reproducible
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any

from ..hashing import compute_hash, entity_digest
from ..retention import to_iso, utcnow
from ..storage.base import Storage, join_path, read_json, write_json

logger = logging.getLogger(__name__)

VERSIONS_DIR = "versions"
HISTORY_FILE = "history.json"
ARCHIVE_DIR = "snapshots"
INITIAL_VERSION = "0.0.1"

_VERSION_RE = re.compile(r"^[0-9A-Za-z][0-9A-Za-z.+-]*$")


class SchemaUnchangedError(Exception):
    """Raised when recording a schema identical to the current version."""

    def __init__(self, message: str = "Schema has not changed since last version") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class SchemaVersion:
    """One ledger entry.

    Attributes:
        version: Semantic version string
        hash: Schema hash at this version
        changed_entities: Entity names added, removed or modified
        applied_at: ISO-8601 time the version was recorded
        description: Optional note
        previous_version: Version this one follows
        previous_hash: Hash this one follows
    """

    version: str
    hash: str
    changed_entities: tuple[str, ...]
    applied_at: str
    description: str | None = None
    previous_version: str | None = None
    previous_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "version": self.version,
            "hash": self.hash,
            "changedEntities": list(self.changed_entities),
            "appliedAt": self.applied_at,
        }
        if self.description is not None:
            result["description"] = self.description
        if self.previous_version is not None:
            result["previousVersion"] = self.previous_version
        if self.previous_hash is not None:
            result["previousHash"] = self.previous_hash
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchemaVersion:
        return cls(
            version=str(data["version"]),
            hash=str(data["hash"]),
            changed_entities=tuple(data.get("changedEntities", [])),
            applied_at=str(data["appliedAt"]),
            description=data.get("description"),
            previous_version=data.get("previousVersion"),
            previous_hash=data.get("previousHash"),
        )


@dataclass
class SchemaVersionHistory:
    """The single history record of a project."""

    current_version: str
    current_hash: str
    versions: list[SchemaVersion] = field(default_factory=list)
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentVersion": self.current_version,
            "currentHash": self.current_hash,
            "versions": [v.to_dict() for v in self.versions],
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchemaVersionHistory:
        return cls(
            current_version=str(data["currentVersion"]),
            current_hash=str(data["currentHash"]),
            versions=[SchemaVersion.from_dict(v) for v in data.get("versions", [])],
            updated_at=str(data.get("updatedAt", "")),
        )


@dataclass(frozen=True)
class VersionDiff:
    """Entity-level difference between two recorded versions."""

    from_version: str
    to_version: str
    added_entities: tuple[str, ...] = ()
    removed_entities: tuple[str, ...] = ()
    modified_entities: tuple[str, ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(self.added_entities or self.removed_entities or self.modified_entities)


def _diff_entities(
    old_entities: dict[str, Any] | None,
    new_entities: dict[str, Any],
    canonical: bool = True,
) -> tuple[list[str], list[str], list[str]]:
    """Split entity names into (added, removed, modified)."""
    old_entities = old_entities or {}
    added = [name for name in new_entities if name not in old_entities]
    removed = [name for name in old_entities if name not in new_entities]
    modified = [
        name
        for name in new_entities
        if name in old_entities
        and entity_digest(old_entities[name], canonical) != entity_digest(new_entities[name], canonical)
    ]
    return added, removed, modified


def detect_changed_entities(
    old_entities: dict[str, Any] | None,
    new_entities: dict[str, Any],
    canonical: bool = True,
) -> list[str]:
    """Names of entities added, removed or modified between two schemas.

    Modification is decided per top-level entity by comparing digests of
    the entity values, independent of the whole-schema hash.

    Example:
        >>> old = {"User": {"fields": {"id": {"type": "uuid"}}}}
        >>> new = {"User": {"fields": {"id": {"type": "uuid"}, "email": {"type": "string"}}},
        ...        "Post": {"fields": {}}}
        >>> sorted(detect_changed_entities(old, new))
        ['Post', 'User']
    """
    added, removed, modified = _diff_entities(old_entities, new_entities, canonical)
    return list(dict.fromkeys(added + removed + modified))


def validate_version(version: str) -> str:
    """Return the version string or raise ValueError if it is not a usable archive key."""
    if not _VERSION_RE.match(version) or ".." in version:
        raise ValueError(f"Invalid schema version: {version!r}")
    return version


def next_patch_version(last_version: str | None) -> str:
    """Increment the patch segment of a version string.

    Versions with fewer than three segments get the missing segments
    appended ("1.2" -> "1.2.1", "1" -> "1.0.1"). Non-numeric segments
    count as 0.
    """
    if not last_version:
        return INITIAL_VERSION
    parts = []
    for segment in last_version.split("."):
        try:
            parts.append(int(segment))
        except ValueError:
            parts.append(0)
    if len(parts) >= 3:
        parts[2] += 1
    elif len(parts) == 2:
        parts.append(1)
    else:
        parts.extend([0, 1])
    return ".".join(str(part) for part in parts)


class VersionLedger:
    """Semantic version history over a project's schema.

    Attributes:
        storage: Backend rooted at the project state dir
        canonical: Hashing mode, must match the snapshot store's

    Example:
        >>> ledger = VersionLedger(storage)
        >>> ledger.record_schema_version(entities).version
        '0.0.1'
        >>> ledger.record_schema_version(entities_with_post).changed_entities
        ('Post',)
    """

    def __init__(
        self,
        storage: Storage,
        canonical: bool = True,
        lock: threading.RLock | None = None,
    ) -> None:
        self.storage = storage
        self.canonical = canonical
        self._lock = lock or threading.RLock()

    def _history_path(self) -> str:
        return join_path(VERSIONS_DIR, HISTORY_FILE)

    def _archive_path(self, version: str) -> str:
        return join_path(VERSIONS_DIR, ARCHIVE_DIR, f"{version}.json")

    def compute_schema_hash(self, entities: dict[str, Any]) -> str:
        return compute_hash(entities, self.canonical)

    def load_history(self) -> SchemaVersionHistory | None:
        """Load the history record; None if absent or corrupt."""
        data = read_json(self.storage, self._history_path())
        if not isinstance(data, dict):
            return None
        try:
            return SchemaVersionHistory.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed version history: {e}")
            return None

    def _save_history(self, history: SchemaVersionHistory) -> None:
        write_json(self.storage, self._history_path(), history.to_dict())

    def load_entity_snapshot(self, version: str) -> dict[str, Any] | None:
        """Entities archived for a version, or None."""
        data = read_json(self.storage, self._archive_path(version))
        return data if isinstance(data, dict) else None

    @staticmethod
    def _next_free_version(last_version: str | None, recorded: set[str]) -> str:
        candidate = next_patch_version(last_version)
        while candidate in recorded:
            candidate = next_patch_version(candidate)
        return candidate

    def record_schema_version(
        self,
        entities: dict[str, Any],
        version: str | None = None,
        description: str | None = None,
    ) -> SchemaVersion:
        """Append a new version for entities.

        Args:
            entities: Schema content to record
            version: Explicit version string; auto-incremented patch if omitted
            description: Optional note

        Returns:
            The recorded SchemaVersion

        Raises:
            SchemaUnchangedError: If entities hash to the current version's hash
            ValueError: If an explicit version string is invalid or already recorded
            StorageError: If persisting the history or archive fails
        """
        with self._lock:
            history = self.load_history()
            schema_hash = self.compute_schema_hash(entities)
            if history is not None and history.current_hash == schema_hash:
                raise SchemaUnchangedError()
            if version:
                validate_version(version)
            recorded = {v.version for v in history.versions} if history else set()
            if version and version in recorded:
                raise ValueError(f"Schema version '{version}' is already recorded")

            last = history.versions[-1] if history and history.versions else None
            previous_entities = self.load_entity_snapshot(last.version) if last else None
            changed = detect_changed_entities(previous_entities, entities, self.canonical)

            now = to_iso(utcnow())
            record = SchemaVersion(
                version=version or self._next_free_version(last.version if last else None, recorded),
                hash=schema_hash,
                changed_entities=tuple(changed),
                applied_at=now,
                description=description,
                previous_version=history.current_version if history else None,
                previous_hash=history.current_hash if history else None,
            )
            new_history = SchemaVersionHistory(
                current_version=record.version,
                current_hash=schema_hash,
                versions=(history.versions if history else []) + [record],
                updated_at=now,
            )
            self._save_history(new_history)
            write_json(self.storage, self._archive_path(record.version), entities)

        logger.info(
            "Recorded schema version",
            extra={
                "version": record.version,
                "schema_hash": schema_hash,
                "changed_entities": list(record.changed_entities),
            },
        )
        return record

    def get_version_diff(self, from_version: str, to_version: str) -> VersionDiff | None:
        """Compare the archived entities of two versions.

        Returns:
            VersionDiff, or None if either version has no archive
        """
        from_entities = self.load_entity_snapshot(from_version)
        to_entities = self.load_entity_snapshot(to_version)
        if from_entities is None or to_entities is None:
            return None
        added, removed, modified = _diff_entities(from_entities, to_entities, self.canonical)
        return VersionDiff(
            from_version=from_version,
            to_version=to_version,
            added_entities=tuple(added),
            removed_entities=tuple(removed),
            modified_entities=tuple(modified),
        )

    def has_schema_changed(self, current_entities: dict[str, Any]) -> bool:
        """True if entities differ from the recorded current hash (or nothing is recorded)."""
        current_hash = self.get_current_schema_hash()
        if not current_hash:
            return True
        return current_hash != self.compute_schema_hash(current_entities)

    def list_schema_versions(self) -> list[SchemaVersion]:
        history = self.load_history()
        return list(history.versions) if history else []

    def get_schema_version(self, version: str) -> SchemaVersion | None:
        for record in self.list_schema_versions():
            if record.version == version:
                return record
        return None

    def get_current_schema_version(self) -> SchemaVersion | None:
        versions = self.list_schema_versions()
        return versions[-1] if versions else None

    def get_current_schema_hash(self) -> str | None:
        history = self.load_history()
        return history.current_hash if history else None
