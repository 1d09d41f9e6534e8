"""
Base protocol and helpers for the storage abstraction.

Every schemavault component persists through a Storage backend rather
than touching the filesystem directly. A backend is a hierarchical
key-value store: keys are POSIX-style paths relative to the project
state root, values are bytes.

Invariants:
    - read() returns None for missing keys, it never raises for absence
    - write() either stores the full value or raises StorageError
    - delete() is idempotent
    - list() returns bare names (not paths), sorted, empty for missing dirs

How to change safely:
    - Add new methods to the protocol with implementations in every backend
    - Keep read paths fail-soft; callers rely on None meaning "not found"
    - Wrap backend-specific failures in StorageError on write paths
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a storage write path fails.

    Attributes:
        operation: Storage operation that failed (write, delete, mkdir)
        path: Key the operation was applied to
    """

    def __init__(self, operation: str, path: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.path = path
        self.cause = cause
        message = f"Storage {operation} failed for '{path}'"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


@runtime_checkable
class Storage(Protocol):
    """Protocol for storage backends.

    Example:
        >>> storage = LocalStorage("/srv/app/.yama")
        >>> storage.write("state/production.json", b"{}")
        >>> storage.read("state/production.json")
        b'{}'
    """

    @abstractmethod
    def read(self, path: str) -> bytes | None:
        """Read a value, or None if the key does not exist."""
        ...

    @abstractmethod
    def write(self, path: str, data: bytes) -> None:
        """Write a value, creating parent directories as needed.

        Raises:
            StorageError: If the underlying write fails
        """
        ...

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Whether a key exists."""
        ...

    @abstractmethod
    def list(self, directory: str) -> list[str]:
        """List entry names directly under a directory."""
        ...

    @abstractmethod
    def mkdir(self, path: str) -> None:
        """Ensure a directory exists."""
        ...

    @abstractmethod
    def delete(self, path: str) -> bool:
        """Delete a key.

        Returns:
            True if something was deleted, False if it was already absent
        """
        ...

    @abstractmethod
    def size(self, path: str) -> int:
        """Size in bytes of a stored value (0 when missing)."""
        ...


def join_path(*parts: str) -> str:
    """Join key segments with '/' while dropping empty segments."""
    return "/".join(part.strip("/") for part in parts if part and part.strip("/"))


def read_json(storage: Storage, path: str) -> Any | None:
    """Read and parse a JSON document.

    Unparsable content is treated exactly like a missing key.

    Args:
        storage: Backend to read from
        path: Key of the JSON document

    Returns:
        Parsed JSON value, or None if missing or corrupt
    """
    raw = storage.read(path)
    if raw is None:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Ignoring unparsable JSON document at {path}: {e}")
        return None


def write_json(storage: Storage, path: str, value: Any) -> None:
    """Serialize a value as indented JSON and write it."""
    payload = json.dumps(value, indent=2) + "\n"
    storage.write(path, payload.encode("utf-8"))
