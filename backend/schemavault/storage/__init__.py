"""
Storage module for schemavault.

Backends implementing the Storage protocol:
- LocalStorage: filesystem (reference backend)
- InMemoryStorage: process-local dict, for tests and tooling

Invariants:
    - Read paths are fail-soft (None/empty on missing or corrupt data)
    - Write paths raise StorageError carrying the operation and key
"""

from .base import Storage, StorageError, join_path, read_json, write_json
from .local import LocalStorage
from .memory import InMemoryStorage

__all__ = [
    "Storage",
    "StorageError",
    "LocalStorage",
    "InMemoryStorage",
    "join_path",
    "read_json",
    "write_json",
]
