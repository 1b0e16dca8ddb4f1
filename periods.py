from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    first = month_start(d)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def iter_months(start: date, end: date) -> Iterator[Period]:
    """Yield every calendar month touched by [start, end] as a full-month period."""
    cursor = month_start(start)
    last = month_start(end)
    while cursor <= last:
        yield Period(cursor.strftime("%Y-%m"), cursor, month_end(cursor))
        cursor = add_months(cursor, 1)


def trailing_year(today: Optional[date] = None) -> Period:
    today = today or local_today()
    try:
        start = today.replace(year=today.year - 1)
    except ValueError:
        # Feb 29 -> Feb 28
        start = today.replace(year=today.year - 1, day=28)
    return Period("trailing_year", start, today)


def month_to_date(today: Optional[date] = None) -> Period:
    today = today or local_today()
    return Period("month_to_date", month_start(today), today)


def resolve_window(
    start: Optional[date],
    end: Optional[date],
    *,
    today: Optional[date] = None,
) -> Period:
    if not start or not end:
        return trailing_year(today)
    if start > end:
        raise ValueError("Start date must be before end date")
    return Period("custom", start, end)
