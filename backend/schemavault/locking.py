"""
Per-project write serialization.

The version ledger, the environment tracker and the manifest writers all
perform load-mutate-save cycles. Two writers against the same project
would silently drop one update, so every such cycle runs under the
project's lock.

Invariants:
    - The same project root always maps to the same lock object
    - Locks are re-entrant, so a locked operation may call another one
    - Serialization is per process; cross-process writers still need an
      external coordinator

Example:
    >>> with project_lock("/srv/app/.yama"):
    ...     ledger.record_schema_version(entities)
"""

from __future__ import annotations

import threading
from pathlib import Path

_locks: dict[str, threading.RLock] = {}
_locks_guard = threading.Lock()


def project_lock(root: str | Path) -> threading.RLock:
    """Return the shared re-entrant lock for a project root.

    Args:
        root: Project state root (resolved before lookup)

    Returns:
        Lock shared by all components of that project in this process
    """
    key = str(Path(root).expanduser().resolve())
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _locks[key] = lock
        return lock
