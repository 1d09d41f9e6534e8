"""
Retention period grammar shared by audit, backup and trash handling.

A retention policy is a duration string ``<integer><unit>`` where unit is
one of d (days), w (weeks), m (30-day months) or y (365-day years),
e.g. "90d", "4w", "1y".
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

DEFAULT_RETENTION_DAYS = 90

_RETENTION_RE = re.compile(r"^\s*(\d+)\s*([dwmy])\s*$", re.IGNORECASE)
_UNIT_DAYS = {"d": 1, "w": 7, "m": 30, "y": 365}


def parse_retention_days(policy: str | None) -> int | None:
    """Parse a retention policy into days.

    Returns:
        Number of days, or None if the policy is empty or unparsable
    """
    if not policy:
        return None
    match = _RETENTION_RE.match(policy)
    if not match:
        return None
    return int(match.group(1)) * _UNIT_DAYS[match.group(2).lower()]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Render a datetime as ISO-8601 with an explicit UTC offset."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing 'Z'.

    Naive timestamps are interpreted as UTC.
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def is_past_retention(timestamp: datetime, retention_days: int, now: datetime | None = None) -> bool:
    """Whether ``now`` is strictly later than timestamp + retention_days."""
    now = now or utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return now > timestamp + timedelta(days=retention_days)
