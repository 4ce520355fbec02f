import calendar
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_months(d: date, months: int) -> date:
    """Shift by whole months, clamping the day to the target month's length (Jan 31 + 1 -> Feb 28/29)."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def isoformat_or_none(value):
    return value.isoformat() if value else None
