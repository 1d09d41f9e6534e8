"""
Local filesystem storage backend.

This is the reference backend: each key maps to a file below a root
directory (normally ``<project>/.yama``).

Invariants:
    - Keys never escape the root directory; reads outside it are "not found"
    - Writes are atomic per file (temp file + os.replace)
    - Read paths swallow only "not found", never other errors silently

How to change safely:
    - Keep the temp-file write so concurrent readers never see torn JSON
    - Test path handling with nested keys before changing resolution
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from .base import StorageError

logger = logging.getLogger(__name__)


class LocalStorage:
    """Filesystem-backed implementation of the Storage protocol.

    Attributes:
        root: Directory all keys are resolved against

    Example:
        >>> storage = LocalStorage("/srv/app/.yama")
        >>> storage.write("snapshots/manifest.json", b'{"snapshots": []}')
        >>> storage.list("snapshots")
        ['manifest.json']
    """

    def __init__(self, root: str | Path) -> None:
        """Initialize the backend.

        Args:
            root: Root directory; created lazily on first write
        """
        self.root = Path(root).expanduser().resolve()

    def _contained(self, path: str) -> Path | None:
        """Resolve a key below root; None if it escapes the root."""
        resolved = (self.root / path).resolve()
        if resolved != self.root and self.root not in resolved.parents:
            return None
        return resolved

    def _resolve(self, path: str) -> Path:
        """Resolve a key for writing; keys outside root are rejected."""
        resolved = self._contained(path)
        if resolved is None:
            raise StorageError("resolve", path, ValueError("path escapes storage root"))
        return resolved

    def read(self, path: str) -> bytes | None:
        """Read file contents, or None if the file does not exist."""
        target = self._contained(path)
        if target is None:
            return None
        try:
            return target.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return None

    def write(self, path: str, data: bytes) -> None:
        """Atomically write file contents.

        Raises:
            StorageError: If the directory or file cannot be written
        """
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, target)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageError("write", path, e) from e

    def exists(self, path: str) -> bool:
        """Whether the file or directory exists."""
        target = self._contained(path)
        return target is not None and target.exists()

    def list(self, directory: str) -> list[str]:
        """List entry names in a directory, skipping in-flight temp files."""
        target = self._contained(directory)
        if target is None or not target.is_dir():
            return []
        return sorted(
            entry.name for entry in target.iterdir() if not entry.name.startswith(".")
        )

    def mkdir(self, path: str) -> None:
        """Create a directory and its parents."""
        try:
            self._resolve(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError("mkdir", path, e) from e

    def delete(self, path: str) -> bool:
        """Delete a file; missing files are not an error."""
        target = self._resolve(path)
        try:
            target.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError("delete", path, e) from e

    def size(self, path: str) -> int:
        """File size in bytes, 0 if missing."""
        target = self._contained(path)
        if target is None:
            return 0
        try:
            return target.stat().st_size
        except FileNotFoundError:
            return 0

    def __repr__(self) -> str:
        return f"LocalStorage(root={str(self.root)!r})"
