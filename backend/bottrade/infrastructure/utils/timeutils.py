"""UTC time helpers.

Every elapsed/remaining-time computation in the app goes through here, so
settlement eligibility never depends on the caller's local clock.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_utc(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


def start_of_utc_day(now: datetime) -> datetime:
    now = ensure_utc(now)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def format_hms(total_seconds: float) -> str:
    """Format seconds as HH:MM:SS (hours may exceed 24)."""
    secs = max(0, int(total_seconds))
    hours, rem = divmod(secs, 3600)
    minutes, seconds = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
