"""Calendar-day helpers.

Every grouping in the system (matching window, daily aggregation, PMC days)
uses the same rule: the calendar day of a timestamp in the athlete's
configured timezone. Naive timestamps are taken to be UTC.
"""

from collections.abc import Iterator
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo


def ensure_aware(value: datetime) -> datetime:
    """Attach UTC to a naive datetime, leave aware ones alone."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def local_day(value: datetime, tz: ZoneInfo | str = "UTC") -> date:
    """Return the calendar day of ``value`` in the given timezone."""
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    return ensure_aware(value).astimezone(zone).date()


def day_bounds(day: date, tz: ZoneInfo | str = "UTC") -> tuple[datetime, datetime]:
    """Return the UTC instants bounding a local calendar day as [start, end)."""
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(UTC), end.astimezone(UTC)


def date_range(start: date, end: date) -> Iterator[date]:
    """Yield every date from ``start`` to ``end`` inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
