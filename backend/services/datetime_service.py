"""Datetime helpers: parsing, formatting and calendar arithmetic."""

from __future__ import annotations

import time
from datetime import datetime, timezone

import pendulum

# Date format used by consumption records
DATE_FORMAT = "%Y-%m-%d"


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a timezone-aware datetime.

    Missing timezone defaults to default_tz.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = pendulum.timezone(default_tz)
            value = value.replace(tzinfo=tz)  # type: ignore[arg-type]
        return value

    parsed = pendulum.parse(value.strip(), tz=default_tz, strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz=default_tz  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def now_millis() -> int:
    """Return the current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def months_ago(months: int, today: pendulum.Date | None = None) -> str:
    """Return the calendar date ``months`` months before ``today`` as YYYY-MM-DD."""
    if today is None:
        today = pendulum.today().date()
    return today.subtract(months=months).strftime(DATE_FORMAT)


def next_daily_run(now: pendulum.DateTime, hour: int, minute: int) -> pendulum.DateTime:
    """Return tomorrow's ``hour:minute`` in ``now``'s timezone."""
    return now.add(days=1).at(hour, minute)
