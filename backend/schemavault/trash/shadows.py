"""
Registry of shadow columns.

When a migration drops or renames a column, the data is first copied to
a shadow column so the change can be undone within the retention window.
This registry tracks those columns; creating and dropping them in the
database is the migration runner's job.

Layout:
    shadows/manifest.json  - {"shadows": [ShadowColumn, ...]}

Invariants:
    - (table, column) is unique; registering again replaces the record
    - Only active shadows expire; restored shadows stay restored
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from ..retention import parse_iso, to_iso, utcnow
from ..storage.base import Storage, join_path, read_json, write_json
from .manager import TrashStatus, calculate_expiration_date

logger = logging.getLogger(__name__)

SHADOWS_DIR = "shadows"
MANIFEST_FILE = "manifest.json"
DEFAULT_SHADOW_RETENTION_DAYS = 30


def generate_shadow_column_name(
    original_name: str,
    snapshot: str,
    timestamp: str | None = None,
) -> str:
    """Shadow column name for a column being dropped at a snapshot.

    Example:
        >>> generate_shadow_column_name("email", "a1b2c3d4e5f6", "2024-01-15T10-30-00")
        '_shadow_email_a1b2c3d4_2024-01-15T10-30-00'
    """
    ts = timestamp or re.sub(r"[:.]", "-", to_iso(utcnow()))
    return f"_shadow_{original_name}_{snapshot[:8]}_{ts}"


@dataclass(frozen=True)
class ShadowColumn:
    column: str
    original_name: str
    table: str
    snapshot: str
    created_at: str
    expires_at: str
    row_count: int | None = None
    size: str | None = None
    status: TrashStatus = TrashStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "column": self.column,
            "originalName": self.original_name,
            "table": self.table,
            "snapshot": self.snapshot,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "status": self.status.value,
        }
        if self.row_count is not None:
            result["rowCount"] = self.row_count
        if self.size is not None:
            result["size"] = self.size
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ShadowColumn:
        return cls(
            column=str(data["column"]),
            original_name=str(data["originalName"]),
            table=str(data["table"]),
            snapshot=str(data["snapshot"]),
            created_at=str(data["createdAt"]),
            expires_at=str(data["expiresAt"]),
            row_count=data.get("rowCount"),
            size=data.get("size"),
            status=TrashStatus(data.get("status", "active")),
        )


class ShadowRegistry:
    """Reads and updates the shadow column manifest."""

    def __init__(self, storage: Storage, lock: threading.RLock | None = None) -> None:
        self.storage = storage
        self._lock = lock or threading.RLock()

    def _manifest_path(self) -> str:
        return join_path(SHADOWS_DIR, MANIFEST_FILE)

    def load(self) -> list[ShadowColumn]:
        """All registered shadows; empty if the manifest is missing or corrupt."""
        data = read_json(self.storage, self._manifest_path())
        if not isinstance(data, dict):
            return []
        shadows = []
        for item in data.get("shadows", []):
            try:
                shadows.append(ShadowColumn.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed shadow record: {e}")
        return shadows

    def _save(self, shadows: list[ShadowColumn]) -> None:
        write_json(
            self.storage,
            self._manifest_path(),
            {"shadows": [shadow.to_dict() for shadow in shadows]},
        )

    def create(
        self,
        table: str,
        original_name: str,
        snapshot: str,
        retention_days: int = DEFAULT_SHADOW_RETENTION_DAYS,
        row_count: int | None = None,
        size: str | None = None,
        now: datetime | None = None,
    ) -> ShadowColumn:
        """Build and register a shadow for a column being removed."""
        created = now or utcnow()
        shadow = ShadowColumn(
            column=generate_shadow_column_name(
                original_name, snapshot, re.sub(r"[:.]", "-", to_iso(created))
            ),
            original_name=original_name,
            table=table,
            snapshot=snapshot,
            created_at=to_iso(created),
            expires_at=to_iso(calculate_expiration_date(retention_days, created)),
            row_count=row_count,
            size=size,
        )
        self.register(shadow)
        return shadow

    def register(self, shadow: ShadowColumn) -> None:
        with self._lock:
            shadows = [
                s for s in self.load() if not (s.table == shadow.table and s.column == shadow.column)
            ]
            shadows.append(shadow)
            self._save(shadows)
        logger.info(
            "Registered shadow column",
            extra={"table": shadow.table, "column": shadow.column, "snapshot": shadow.snapshot},
        )

    def get(self, table: str, column: str) -> ShadowColumn | None:
        for shadow in self.load():
            if shadow.table == table and shadow.column == column:
                return shadow
        return None

    def for_table(self, table: str) -> list[ShadowColumn]:
        return [shadow for shadow in self.load() if shadow.table == table]

    def active(self, now: datetime | None = None) -> list[ShadowColumn]:
        """Active shadows still inside their retention window."""
        moment = now or utcnow()
        return [
            s
            for s in self.load()
            if s.status == TrashStatus.ACTIVE and parse_iso(s.expires_at) > moment
        ]

    def expired(self, now: datetime | None = None) -> list[ShadowColumn]:
        """Active shadows whose retention window has passed."""
        moment = now or utcnow()
        return [
            s
            for s in self.load()
            if s.status == TrashStatus.ACTIVE and parse_iso(s.expires_at) <= moment
        ]

    def mark_restored(self, table: str, column: str) -> ShadowColumn | None:
        """Mark a shadow restored. Returns the updated record, None if unknown."""
        with self._lock:
            shadows = self.load()
            for index, shadow in enumerate(shadows):
                if shadow.table == table and shadow.column == column:
                    shadows[index] = replace(shadow, status=TrashStatus.RESTORED)
                    self._save(shadows)
                    return shadows[index]
        return None

    def delete(self, table: str, column: str) -> None:
        """Remove a shadow from the manifest. Idempotent."""
        with self._lock:
            shadows = self.load()
            kept = [s for s in shadows if not (s.table == table and s.column == column)]
            if len(kept) != len(shadows):
                self._save(kept)
