"""Local-calendar helpers. Task dates are stored as naive local datetimes."""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple, Union

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def local_now() -> datetime:
    return datetime.now()


def day_bounds(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Inclusive [local midnight, last microsecond of the day] around ``now``."""
    now = to_local_naive(now or local_now())
    start = datetime.combine(now.date(), time.min)
    end = start + timedelta(days=1) - timedelta(microseconds=1)
    return start, end


def week_bounds(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Week starting at the most recent local Sunday 00:00, seven days long (end exclusive)."""
    now = to_local_naive(now or local_now())
    # Monday=0 ... Sunday=6
    days_since_sunday = (now.weekday() + 1) % 7
    start = datetime.combine(now.date() - timedelta(days=days_since_sunday), time.min)
    return start, start + timedelta(days=7)


def parse_datetime(raw: Union[str, datetime, date], *, end_of_day: bool = False) -> datetime:
    """
    Parse an ISO date or datetime. A bare ``YYYY-MM-DD`` means local midnight,
    or the last microsecond of that day when ``end_of_day`` is set.
    """
    if isinstance(raw, datetime):
        return to_local_naive(raw)
    if isinstance(raw, date):
        return datetime.combine(raw, time.max if end_of_day else time.min)

    s = str(raw).strip()
    if not s:
        raise ValueError("empty date")
    if _DATE_ONLY.match(s):
        d = date.fromisoformat(s)
        return datetime.combine(d, time.max if end_of_day else time.min)
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return to_local_naive(datetime.fromisoformat(s))
