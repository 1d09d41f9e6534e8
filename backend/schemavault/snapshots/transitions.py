"""
Transitions between schema snapshots.

A transition records the migration steps that move a database from one
snapshot to another. Transitions are content-addressed like snapshots,
and together they form a directed graph whose nodes are snapshot hashes.

Layout:
    transitions/<hash>.json

Invariants:
    - A transition hash covers from_hash, to_hash and steps only
    - Steps are opaque to this module; the migration planner owns them
    - find_path returns the shortest chain of transitions, or None
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from ..hashing import compute_hash
from ..retention import to_iso, utcnow
from ..storage.base import Storage, join_path, read_json, write_json

logger = logging.getLogger(__name__)

TRANSITIONS_DIR = "transitions"


@dataclass(frozen=True)
class Transition:
    """Migration path between two snapshots.

    Attributes:
        hash: Digest of (from_hash, to_hash, steps)
        from_hash: Source snapshot hash
        to_hash: Target snapshot hash
        steps: Ordered migration steps
        created_at: ISO-8601 creation time
        description: Optional note
    """

    hash: str
    from_hash: str
    to_hash: str
    steps: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = ""
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {"createdAt": self.created_at}
        if self.description is not None:
            metadata["description"] = self.description
        return {
            "hash": self.hash,
            "fromHash": self.from_hash,
            "toHash": self.to_hash,
            "steps": self.steps,
            "metadata": metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transition:
        metadata = data.get("metadata") or {}
        return cls(
            hash=str(data["hash"]),
            from_hash=str(data["fromHash"]),
            to_hash=str(data["toHash"]),
            steps=list(data.get("steps", [])),
            created_at=str(metadata.get("createdAt", "")),
            description=metadata.get("description"),
        )


class TransitionStore:
    """Stores transitions and answers path queries between snapshots.

    Example:
        >>> transitions = TransitionStore(storage)
        >>> t = transitions.create_transition(h1, h2, steps)
        >>> transitions.save_transition(t)
        >>> [x.to_hash for x in transitions.find_path(h1, h2)]
        [h2]
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def _path(self, transition_hash: str) -> str:
        return join_path(TRANSITIONS_DIR, f"{transition_hash}.json")

    def create_transition(
        self,
        from_hash: str,
        to_hash: str,
        steps: list[dict[str, Any]],
        description: str | None = None,
    ) -> Transition:
        """Build a transition. Pure: nothing is persisted."""
        digest = compute_hash({"fromHash": from_hash, "toHash": to_hash, "steps": steps})
        return Transition(
            hash=digest,
            from_hash=from_hash,
            to_hash=to_hash,
            steps=steps,
            created_at=to_iso(utcnow()),
            description=description,
        )

    def save_transition(self, transition: Transition) -> None:
        write_json(self.storage, self._path(transition.hash), transition.to_dict())
        logger.info(
            "Saved transition",
            extra={
                "transition": transition.hash,
                "from_hash": transition.from_hash,
                "to_hash": transition.to_hash,
            },
        )

    def load_transition(self, transition_hash: str) -> Transition | None:
        data = read_json(self.storage, self._path(transition_hash))
        if not isinstance(data, dict):
            return None
        try:
            return Transition.from_dict(data)
        except (KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed transition {transition_hash}: {e}")
            return None

    def transition_exists(self, transition_hash: str) -> bool:
        return self.storage.exists(self._path(transition_hash))

    def delete_transition(self, transition_hash: str) -> None:
        self.storage.delete(self._path(transition_hash))

    def get_all_transitions(self) -> list[Transition]:
        transitions = []
        for name in self.storage.list(TRANSITIONS_DIR):
            if not name.endswith(".json"):
                continue
            transition = self.load_transition(name[: -len(".json")])
            if transition is not None:
                transitions.append(transition)
        return transitions

    def find_path(self, from_hash: str, to_hash: str) -> list[Transition] | None:
        """Shortest sequence of transitions leading from one snapshot to another.

        Returns:
            Ordered transitions (empty when from_hash == to_hash), or None if
            the target is unreachable
        """
        if from_hash == to_hash:
            return []

        outgoing: dict[str, list[Transition]] = {}
        for transition in self.get_all_transitions():
            outgoing.setdefault(transition.from_hash, []).append(transition)

        queue: deque[tuple[str, list[Transition]]] = deque([(from_hash, [])])
        visited = {from_hash}
        while queue:
            node, path = queue.popleft()
            for transition in outgoing.get(node, []):
                if transition.to_hash in visited:
                    continue
                next_path = path + [transition]
                if transition.to_hash == to_hash:
                    return next_path
                visited.add(transition.to_hash)
                queue.append((transition.to_hash, next_path))
        return None
