"""
Trash module for schemavault.

Safety net for destructive operations:
- TrashManager: soft-deleted files with expiry and restore
- ShadowRegistry: shadow columns kept for dropped/renamed columns
"""

from .manager import (
    TrashEntry,
    TrashError,
    TrashManager,
    TrashMetadata,
    TrashStatus,
    TrashType,
    calculate_expiration_date,
    is_expired,
    trash_status,
)
from .shadows import ShadowColumn, ShadowRegistry, generate_shadow_column_name

__all__ = [
    "TrashEntry",
    "TrashError",
    "TrashManager",
    "TrashMetadata",
    "TrashStatus",
    "TrashType",
    "calculate_expiration_date",
    "is_expired",
    "trash_status",
    "ShadowColumn",
    "ShadowRegistry",
    "generate_shadow_column_name",
]
