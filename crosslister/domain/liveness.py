from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Postgres hands back aware datetimes, SQLite naive ones (stored as UTC)
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_worker_live(
    connected: bool,
    last_seen: Optional[datetime],
    now: datetime,
    freshness_seconds: int,
) -> bool:
    """True iff the worker is flagged connected and checked in within the window."""
    if not connected or last_seen is None:
        return False
    return as_utc(last_seen) >= as_utc(now) - timedelta(seconds=freshness_seconds)


def is_connection_fresh(
    verified_at: Optional[datetime],
    now: datetime,
    max_age_hours: int,
) -> bool:
    if verified_at is None:
        return False
    return as_utc(verified_at) >= as_utc(now) - timedelta(hours=max_age_hours)
