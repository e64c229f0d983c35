"""Injectable clock.

Services that stamp records or decide what "today" is take a ``Clock``
rather than calling ``datetime.now`` so that tests can pin time.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(UTC)


class FixedClock:
    """Clock frozen at a given instant, advanced explicitly.

    Example:
        clock = FixedClock(datetime(2024, 6, 1, tzinfo=UTC))
        clock.advance(days=1)
    """

    def __init__(self, now: datetime) -> None:
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        self._now = now

    def __call__(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> None:
        """Move the clock forward by a ``timedelta(**kwargs)``."""
        self._now = self._now + timedelta(**kwargs)
