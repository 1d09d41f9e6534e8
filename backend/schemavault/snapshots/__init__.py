"""
Snapshot module for schemavault.

Content-addressed storage of schema definitions:
- SnapshotStore: immutable snapshots plus the manifest index
- TransitionStore: migration paths between snapshots

Invariants:
    - Snapshot hash is a pure function of entities
    - Saving identical content is a no-op
"""

from .store import (
    ManifestEntry,
    Snapshot,
    SnapshotManifest,
    SnapshotMetadata,
    SnapshotNotFoundError,
    SnapshotStore,
)
from .transitions import Transition, TransitionStore

__all__ = [
    "Snapshot",
    "SnapshotMetadata",
    "SnapshotManifest",
    "ManifestEntry",
    "SnapshotStore",
    "SnapshotNotFoundError",
    "Transition",
    "TransitionStore",
]
