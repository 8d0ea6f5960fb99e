"""Calendar helpers. All day and month boundaries are UTC."""

import re
from datetime import date, datetime, timedelta, timezone

from .errors import ValidationError

_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def to_utc(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)


def utc_day(epoch_seconds: float) -> str:
    """Calendar day (YYYY-MM-DD) containing the timestamp."""
    return to_utc(epoch_seconds).date().isoformat()


def validate_month(month: str) -> str:
    if not month or not _MONTH_RE.match(month):
        raise ValidationError(f"Invalid month '{month}', expected YYYY-MM")
    return month


def validate_day(day: str) -> str:
    try:
        date.fromisoformat(day)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date '{day}', expected YYYY-MM-DD") from None
    return day


def next_month(month: str) -> str:
    year, mon = (int(part) for part in month.split("-"))
    if mon == 12:
        return f"{year + 1}-01"
    return f"{year}-{mon + 1:02d}"


def month_bounds(month: str) -> tuple[str, str]:
    """First day of the month and first day of the following month."""
    validate_month(month)
    return f"{month}-01", f"{next_month(month)}-01"


def current_month(now: datetime) -> str:
    return now.strftime("%Y-%m")


def previous_month(now: datetime) -> str:
    first = now.replace(day=1)
    return (first - timedelta(days=1)).strftime("%Y-%m")
