"""
Day-boundary instants for event windows.

Bare dates (YYYY-MM-DD or YYYY/MM/DD) mean the host's local calendar day: start is local
00:00:00.000, end is local 23:59:59.999. The local instant is converted to an aware UTC
datetime and used as-is for Strava after/before bounds and for client-side range filters.
Start fails strictly (None, caller skips the bounded query); end falls back to now.
"""
import logging
import re
from datetime import date, datetime, time, timezone

logger = logging.getLogger(__name__)

_DATE_SPLIT = re.compile(r"[-/]")
_START_OF_DAY = time(0, 0, 0, 0)
_END_OF_DAY = time(23, 59, 59, 999000)


def _local_day(value: str | date | datetime | None) -> date | None:
    """Calendar date (host-local) that `value` falls on, or None when unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        # Naive datetimes are host-local already; aware ones are moved to host-local
        return value.astimezone().date() if value.tzinfo else value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None
    try:
        if "T" in s:
            parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
            return parsed.astimezone().date() if parsed.tzinfo else parsed.date()
        parts = _DATE_SPLIT.split(s)
        if len(parts) != 3:
            return None
        year, month, day = (int(p) for p in parts)
        return date(year, month, day)
    except (ValueError, TypeError):
        return None


def _local_instant_utc(day: date, at: time) -> datetime:
    # naive datetime.astimezone() interprets the wall clock in the host timezone
    return datetime.combine(day, at).astimezone(timezone.utc)


def start_of_day_utc(value: str | date | datetime | None) -> datetime | None:
    """Local midnight of the given day as a UTC instant; None if the input cannot be parsed."""
    day = _local_day(value)
    if day is None:
        if value:
            logger.error("Invalid date: %r", value)
        return None
    return _local_instant_utc(day, _START_OF_DAY)


def end_of_day_utc(value: str | date | datetime | None) -> datetime:
    """Local 23:59:59.999 of the given day as a UTC instant; now when missing or unparseable."""
    day = _local_day(value)
    if day is None:
        if value:
            logger.error("Invalid date: %r", value)
        return datetime.now(timezone.utc)
    return _local_instant_utc(day, _END_OF_DAY)


def to_epoch_seconds(instant: datetime) -> int:
    """Unix seconds (floored) for Strava after/before params."""
    if instant.tzinfo is None:
        instant = instant.astimezone()
    return int(instant.timestamp())


def as_utc(instant: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from storage; convert aware ones."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def within_range(instant: datetime, start: datetime, end: datetime) -> bool:
    """Inclusive on both ends."""
    return as_utc(start) <= as_utc(instant) <= as_utc(end)
