"""
Per-environment schema pointers.

Each named environment (production, staging, ...) has one mutable
pointer naming the snapshot currently active there, analogous to a
branch HEAD.

Layout:
    state/<environment>.json

Invariants:
    - One state file per environment, upserted in place
    - Environment names are restricted so state files stay inside state/
    - This module does not check that a snapshot exists; Project.promote does

How to change safely:
    - Keep update_state under the project lock (load-mutate-save)
    - Add new state fields as optional with defaults
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, replace
from typing import Any

from ..retention import to_iso, utcnow
from ..storage.base import Storage, join_path, read_json, write_json

logger = logging.getLogger(__name__)

STATE_DIR = "state"

_ENVIRONMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class InvalidEnvironmentError(ValueError):
    """Raised for environment names that cannot be used as state keys."""

    pass


@dataclass(frozen=True)
class EnvironmentState:
    """Current snapshot pointer of one environment.

    Attributes:
        environment: Environment name
        current_snapshot: Active snapshot hash, None before first promotion
        updated_at: ISO-8601 time of the last change
    """

    environment: str
    current_snapshot: str | None
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "currentSnapshot": self.current_snapshot,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnvironmentState:
        return cls(
            environment=str(data["environment"]),
            current_snapshot=data.get("currentSnapshot") or None,
            updated_at=str(data.get("updatedAt", "")),
        )


def validate_environment(environment: str) -> str:
    """Return the environment name or raise InvalidEnvironmentError."""
    if not environment or not _ENVIRONMENT_RE.match(environment) or ".." in environment:
        raise InvalidEnvironmentError(f"Invalid environment name: {environment!r}")
    return environment


class EnvironmentStateTracker:
    """Reads and updates environment pointers.

    Example:
        >>> tracker = EnvironmentStateTracker(storage)
        >>> tracker.update_state("production", snapshot.hash)
        >>> tracker.get_current_snapshot("production") == snapshot.hash
        True
    """

    def __init__(self, storage: Storage, lock: threading.RLock | None = None) -> None:
        self.storage = storage
        self._lock = lock or threading.RLock()

    def _state_path(self, environment: str) -> str:
        return join_path(STATE_DIR, f"{validate_environment(environment)}.json")

    def load_state(self, environment: str) -> EnvironmentState | None:
        """Load an environment's state; None if absent or corrupt."""
        data = read_json(self.storage, self._state_path(environment))
        if not isinstance(data, dict):
            return None
        try:
            return EnvironmentState.from_dict(data)
        except (KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed state for {environment}: {e}")
            return None

    def save_state(self, state: EnvironmentState) -> None:
        write_json(self.storage, self._state_path(state.environment), state.to_dict())

    def get_or_create_state(self, environment: str) -> EnvironmentState:
        """Existing state, or a fresh persisted state with no snapshot."""
        with self._lock:
            existing = self.load_state(environment)
            if existing is not None:
                return existing
            state = EnvironmentState(
                environment=environment,
                current_snapshot=None,
                updated_at=to_iso(utcnow()),
            )
            self.save_state(state)
            return state

    def update_state(self, environment: str, snapshot_hash: str) -> EnvironmentState:
        """Point an environment at a snapshot.

        Returns:
            The updated state
        """
        with self._lock:
            state = self.get_or_create_state(environment)
            previous = state.current_snapshot
            state = replace(state, current_snapshot=snapshot_hash, updated_at=to_iso(utcnow()))
            self.save_state(state)

        logger.info(
            "Updated environment state",
            extra={
                "environment": environment,
                "snapshot": snapshot_hash,
                "previous_snapshot": previous,
            },
        )
        return state

    def get_current_snapshot(self, environment: str) -> str | None:
        state = self.load_state(environment)
        return state.current_snapshot if state else None

    def state_exists(self, environment: str) -> bool:
        return self.storage.exists(self._state_path(environment))

    def delete_state(self, environment: str) -> None:
        """Remove an environment's state. Idempotent."""
        with self._lock:
            if self.storage.delete(self._state_path(environment)):
                logger.info("Deleted environment state", extra={"environment": environment})

    def list_environments(self) -> list[str]:
        return [
            name[: -len(".json")]
            for name in self.storage.list(STATE_DIR)
            if name.endswith(".json")
        ]

    def get_all_states(self) -> list[EnvironmentState]:
        states = []
        for environment in self.list_environments():
            try:
                state = self.load_state(environment)
            except InvalidEnvironmentError:
                continue
            if state is not None:
                states.append(state)
        return states
