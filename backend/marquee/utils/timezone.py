"""
Timezone utilities for Marquee.
Provides consistent UTC datetime handling; the DB stores naive UTC timestamps.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone info.
    Replacement for deprecated datetime.utcnow().
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is UTC and timezone-aware.
    If timezone-naive, assumes it's already UTC and adds UTC timezone.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_epoch(seconds: Optional[float]) -> Optional[datetime]:
    if seconds is None:
        return None
    return datetime.fromtimestamp(float(seconds), tz=timezone.utc)


def expires_within(expires_at: Optional[datetime], margin_seconds: int, now: Optional[datetime] = None) -> bool:
    """True when expires_at is unknown or falls inside the next margin_seconds."""
    if expires_at is None:
        return True
    now = now or utc_now()
    return ensure_utc(expires_at) - timedelta(seconds=margin_seconds) <= now


def format_iso_utc(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")
