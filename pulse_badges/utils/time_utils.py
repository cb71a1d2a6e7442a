"""
Date and time helpers for daily runs.

Key concepts:
  - Run date: the calendar date of "now" in the fixed reference timezone.
    One ``daily_runs`` row exists per (market, run date).
  - Start of day: the UTC instant at which the run date began in the
    reference timezone. Analyses generated at or after it count as "today".
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """Return the current UTC datetime with timezone info.

    Prefer this over ``datetime.utcnow()`` (which returns naive datetimes).
    """
    return datetime.now(tz=timezone.utc)


def run_date_for(now: Optional[datetime] = None, tz_name: str = "UTC") -> date:
    """Return the run date for ``now`` in the reference timezone.

    Naive datetimes are interpreted as UTC.

    Args:
        now: Instant to convert. Defaults to ``utcnow()``.
        tz_name: IANA timezone name of the reference timezone.

    Returns:
        Calendar date in the reference timezone.
    """
    now = _as_utc(now or utcnow())
    return now.astimezone(ZoneInfo(tz_name)).date()


def start_of_day_utc(run_date: date, tz_name: str = "UTC") -> datetime:
    """Return the UTC instant at which ``run_date`` starts in ``tz_name``."""
    local_midnight = datetime.combine(run_date, time.min, tzinfo=ZoneInfo(tz_name))
    return local_midnight.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as fixed-width UTC text so SQLite string order is time order."""
    return _as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp stored in SQLite; naive values are UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return _as_utc(parsed)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
