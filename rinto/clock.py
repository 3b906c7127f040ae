# UTC helpers shared by admission, lifecycle and sweepers.
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a timestamp to timezone-aware UTC.

    Some backends (e.g., SQLite) return naive datetimes; stored values are always UTC,
    so naive inputs are treated as UTC rather than local time.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
