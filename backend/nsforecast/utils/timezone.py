from datetime import datetime, timedelta, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Normalizes a datetime to aware UTC.
    Assumes naive datetimes are UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, int, float, datetime]) -> datetime:
    """
    Parses ISO strings ("Z" suffix allowed), epoch milliseconds or datetimes
    into aware UTC datetimes.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    clean_ts = str(value).strip().replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(clean_ts)
    except ValueError:
        dt = datetime.strptime(clean_ts, "%Y-%m-%dT%H:%M:%S")
    return ensure_utc(dt)


def fixed_offset(minutes: int) -> timezone:
    return timezone(timedelta(minutes=minutes))


def format_iso(dt: Optional[datetime], tz: timezone = timezone.utc) -> str:
    """ISO-8601 in a fixed offset, no fractional seconds. Empty for None."""
    if dt is None:
        return ""
    return ensure_utc(dt).astimezone(tz).replace(microsecond=0).isoformat()


def minutes_between(start: datetime, end: datetime) -> float:
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 60.0


__all__ = ["utcnow", "ensure_utc", "parse_timestamp", "fixed_offset", "format_iso", "minutes_between"]
