from __future__ import annotations

import calendar
import datetime as dt
import re
from typing import Iterator, Optional


DAY_NAMES = ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY")


def parse_date_flex(value) -> Optional[dt.date]:
    """Best-effort date parser for API payloads and CLI arguments."""

    if not value:
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    s = str(value).strip()
    if not s:
        return None
    try:
        return dt.date.fromisoformat(s[:10])
    except ValueError:
        pass
    parts = [p for p in re.split(r"[^0-9]", s) if p]
    if len(parts) >= 3:
        try:
            y, m, d = map(int, parts[:3])
            return dt.date(y, m, d)
        except ValueError:
            return None
    return None


def date_range(start: dt.date, end: dt.date) -> Iterator[dt.date]:
    """Yield every date from ``start`` to ``end`` inclusive."""
    current = start
    while current <= end:
        yield current
        current += dt.timedelta(days=1)


def inclusive_days(start: dt.date, end: dt.date) -> int:
    if end < start:
        return 0
    return (end - start).days + 1


def day_name(value: dt.date) -> str:
    return DAY_NAMES[value.weekday()]


def year_start(year: int) -> dt.date:
    return dt.date(year, 1, 1)


def add_months(value: dt.date, months: int) -> dt.date:
    """Same day ``months`` later, clamped to the last day of short months."""
    index = value.month - 1 + months
    year, month = value.year + index // 12, index % 12 + 1
    return dt.date(year, month, min(value.day, calendar.monthrange(year, month)[1]))
