"""
Time helpers.

The database stores naive UTC datetimes. Business rules that talk about "9 AM"
or "Saturday" are evaluated in the business's own timezone.
"""

from datetime import datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 string (with or without offset) into naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return to_naive_utc(parsed)


def to_local(value: datetime, tz: str) -> datetime:
    """Naive UTC -> aware local time."""
    return value.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz))


def local_to_utc(value: datetime, tz: str) -> datetime:
    """Naive local wall time -> naive UTC."""
    return to_naive_utc(value.replace(tzinfo=ZoneInfo(tz)))


def local_day_bounds(value: datetime, tz: str):
    """UTC bounds [start, end) of the local calendar day containing `value`."""
    local = to_local(value, tz)
    start = datetime.combine(local.date(), time(0, 0))
    return local_to_utc(start, tz), local_to_utc(start + timedelta(days=1), tz)


def parse_hhmm(value: str, default: time) -> time:
    try:
        hour, minute = str(value).split(":")[:2]
        return time(int(hour), int(minute))
    except (ValueError, TypeError):
        return default


def format_for_voice(value: datetime, tz: str) -> str:
    local = to_local(value, tz)
    return local.strftime("%A, %B %d at %I:%M %p").replace(" 0", " ")
