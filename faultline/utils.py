"""
Timestamp helpers. Everything is stored as naive UTC.
"""
from datetime import datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Union[datetime, str, int, float, None], default: Optional[datetime] = None) -> Optional[datetime]:
    """
    Normalize an SDK timestamp to naive UTC.
    Accepts datetimes, ISO-8601 strings (with or without "Z") and epoch seconds.
    """
    if value is None:
        return default
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return default
    return to_naive_utc(parsed)


def minute_floor(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)


def epoch_ms(value: datetime) -> int:
    """Milliseconds since the epoch for a naive UTC datetime."""
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)

