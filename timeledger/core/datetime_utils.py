"""Timezone-aware datetime utilities.

Timestamps are persisted as naive UTC datetimes. Anything that depends on a
calendar day (aggregation, filtering, presentation) goes through a ``Clock``,
which carries the current instant and the local timezone so both can be
fixed in tests.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta, tzinfo


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


def to_utc_naive(dt: datetime | None) -> datetime | None:
    """Convert a datetime to naive UTC datetime.

    Args:
        dt: Datetime to convert (naive values are assumed to be UTC already)

    Returns:
        Naive datetime in UTC, or None if input is None
    """
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC).replace(tzinfo=None)
    return dt


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Ensure datetime is timezone-aware UTC.

    Args:
        dt: Datetime to convert

    Returns:
        Timezone-aware UTC datetime, or None if input is None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


@dataclass(frozen=True)
class Clock:
    """Source of "now" plus the local timezone used for day boundaries.

    ``tz=None`` means the system local zone.
    """

    tz: tzinfo | None = None
    now_func: Callable[[], datetime] = field(default=utc_now)

    def now(self) -> datetime:
        """Current instant, timezone-aware UTC."""
        return ensure_utc(self.now_func())

    def now_naive(self) -> datetime:
        """Current instant as naive UTC (storage form)."""
        return to_utc_naive(self.now())

    def to_local(self, dt: datetime) -> datetime:
        """Convert a stored (naive UTC) or aware instant to local time."""
        return ensure_utc(dt).astimezone(self.tz)

    def local_date(self, dt: datetime) -> date:
        return self.to_local(dt).date()

    def today(self) -> date:
        return self.to_local(self.now()).date()

    def localize(self, dt: datetime) -> datetime:
        """Attach the local zone to a naive local wall-clock datetime."""
        if dt.tzinfo is not None:
            return dt
        if self.tz is None:
            return dt.astimezone()
        return dt.replace(tzinfo=self.tz)

    def to_storage(self, dt: datetime) -> datetime:
        """Naive values are local wall-clock time; aware values are absolute."""
        return to_utc_naive(self.localize(dt))

    def start_of_day(self, day: date) -> datetime:
        """Local midnight of ``day`` as an aware datetime."""
        return self.localize(datetime.combine(day, time.min))

    def day_bounds(self, day: date) -> tuple[datetime, datetime]:
        """Absolute ``[start, end)`` of a local calendar day, naive UTC."""
        start = self.start_of_day(day)
        end = self.start_of_day(day + timedelta(days=1))
        return to_utc_naive(start), to_utc_naive(end)

    def range_bounds(
        self,
        date_from: date | None,
        date_to: date | None,
    ) -> tuple[datetime | None, datetime | None]:
        """Absolute bounds of an inclusive local-date range; open ends stay None."""
        start = self.day_bounds(date_from)[0] if date_from else None
        end = self.day_bounds(date_to)[1] if date_to else None
        return start, end
