from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

from config import settings
from errors import InvalidArgument


class SystemClock:
    """Reads the current calendar date in the library's configured timezone."""

    def __init__(self, tz_name: Optional[str] = None) -> None:
        self.tz = ZoneInfo(tz_name or settings.library_timezone)

    def today(self) -> date:
        return datetime.now(self.tz).date()


class FixedClock:
    """Clock pinned to a given date. Tests move it with ``advance``."""

    def __init__(self, current: date) -> None:
        self.current = current

    def today(self) -> date:
        return self.current

    def advance(self, days: int = 1) -> date:
        self.current = self.current + timedelta(days=days)
        return self.current


def days_between(a: date, b: date) -> int:
    """Whole days from ``a`` to ``b``; negative when ``b`` is earlier."""
    return (b - a).days


def parse_date(value: Any, field: str = "date") -> date:
    """Coerce a date, datetime or ``YYYY-MM-DD`` string into a date."""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidArgument(f"{field} is required (YYYY-MM-DD)")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError as e:
            raise InvalidArgument(f"{field} must be a YYYY-MM-DD date, got {value!r}") from e
    raise InvalidArgument(f"{field} must be a YYYY-MM-DD date, got {value!r}")
