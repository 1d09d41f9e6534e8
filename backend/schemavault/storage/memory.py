"""
In-memory storage backend.

Useful for unit tests and for tooling that wants to compute snapshots
and diffs without touching disk.

Invariants:
    - All data is lost when the instance is garbage collected
    - Directories are implicit: a directory exists if any key is below it
    - Behaves like LocalStorage for every protocol method
"""

from __future__ import annotations

import threading

from .base import join_path


class InMemoryStorage:
    """Dict-backed implementation of the Storage protocol.

    Example:
        >>> storage = InMemoryStorage()
        >>> storage.write("state/staging.json", b"{}")
        >>> storage.exists("state")
        True
    """

    def __init__(self) -> None:
        self._files: dict[str, bytes] = {}
        self._dirs: set[str] = set()
        self._lock = threading.Lock()

    def read(self, path: str) -> bytes | None:
        return self._files.get(join_path(path))

    def write(self, path: str, data: bytes) -> None:
        key = join_path(path)
        with self._lock:
            self._files[key] = bytes(data)

    def exists(self, path: str) -> bool:
        key = join_path(path)
        if key in self._files or key in self._dirs:
            return True
        prefix = f"{key}/"
        return any(name.startswith(prefix) for name in self._files)

    def list(self, directory: str) -> list[str]:
        prefix = f"{join_path(directory)}/" if join_path(directory) else ""
        names = set()
        for key in list(self._files) + list(self._dirs):
            if key.startswith(prefix) and key != prefix.rstrip("/"):
                names.add(key[len(prefix):].split("/", 1)[0])
        return sorted(names)

    def mkdir(self, path: str) -> None:
        with self._lock:
            self._dirs.add(join_path(path))

    def delete(self, path: str) -> bool:
        with self._lock:
            return self._files.pop(join_path(path), None) is not None

    def size(self, path: str) -> int:
        data = self._files.get(join_path(path))
        return len(data) if data is not None else 0
