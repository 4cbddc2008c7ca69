from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Union[str, date, datetime, None]) -> Optional[datetime]:
    """
    Normalize a filter boundary to a UTC-naive datetime.

    - None / "" -> None
    - date -> midnight of that day
    - "YYYY-MM-DD" / "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        return datetime.combine(value, time.min)
    else:
        s = value.strip()
        if not s:
            return None

        # Accept trailing Z
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"

        dt = datetime.fromisoformat(s)

    if dt.tzinfo is None:
        return dt

    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def end_of_day(value: Union[str, date, datetime, None]) -> Optional[datetime]:
    """Inclusive upper bound: a bare date means the whole day."""
    dt = parse_iso_datetime(value)
    if dt is None:
        return None
    if isinstance(value, str) and len(value.strip()) == 10:
        return datetime.combine(dt.date(), time.max)
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.max)
    return dt


def whole_days_since(dt: Optional[datetime], now: Optional[datetime] = None) -> int:
    if dt is None:
        return 0
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    delta = (now or utcnow()) - dt
    return max(0, delta.days)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
