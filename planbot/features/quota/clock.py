"""
planbot/features/quota/clock.py

Daily reset boundary math. The boundary is midnight in a fixed UTC offset,
never the server's local wall clock.
"""

from datetime import datetime, time, timedelta, timezone
from typing import Optional

from planbot.core.config import settings


def normalize_now(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def reset_offset(offset_hours: Optional[int] = None) -> timedelta:
    if offset_hours is None:
        offset_hours = settings.QUOTA_RESET_UTC_OFFSET_HOURS
    return timedelta(hours=offset_hours)


def next_reset_at(now: Optional[datetime] = None, offset_hours: Optional[int] = None) -> datetime:
    """Next midnight (in the configured offset) strictly after `now`, as UTC.

    Same logical day in, same boundary out.
    """
    now = normalize_now(now)
    offset = reset_offset(offset_hours)
    shifted = now + offset
    midnight = datetime.combine(shifted.date() + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return midnight - offset


def to_local_iso(value: datetime, offset_hours: Optional[int] = None) -> str:
    tz = timezone(reset_offset(offset_hours))
    return normalize_now(value).astimezone(tz).isoformat()


def humanize_seconds(seconds: float) -> str:
    """Compact countdown: '5h 12m', '12m', '<1m'."""
    total_minutes = int(max(0, seconds) // 60)
    if total_minutes < 1:
        return "<1m"
    hours, minutes = divmod(total_minutes, 60)
    if hours and minutes:
        return f"{hours}h {minutes}m"
    if hours:
        return f"{hours}h"
    return f"{minutes}m"
