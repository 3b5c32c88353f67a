from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    """Return a timezone-aware UTC datetime (no deprecation warnings)."""
    return datetime.now(timezone.utc)


def ensure_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to timezone-aware UTC for safe comparisons.

    SQLite hands back naive values for ``DateTime(timezone=True)`` columns;
    those are assumed to already be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a stored timestamp as an ISO-8601 UTC string (or None)."""
    aware = ensure_aware_utc(dt)
    return aware.isoformat() if aware else None
