"""
Day and window boundaries.

Every aggregation splits its window the same way: complete UTC days before
today come from rollups, and [today 00:00 UTC, now) comes from the live
event ledger. Both ranges are computed here and nowhere else.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple, Union

from voravia_meter.storage.db import to_utc


@dataclass(frozen=True)
class UsageWindow:
    """Historical day range plus live time range for a trailing window."""
    historical_start: date  # inclusive
    historical_end: date    # exclusive, always today
    live_start: datetime
    live_end: datetime

    @property
    def today(self) -> date:
        return self.historical_end

    def days(self) -> List[date]:
        """Every calendar day of the window, oldest first, today last."""
        span = (self.historical_end - self.historical_start).days
        return [self.historical_start + timedelta(days=i) for i in range(span + 1)]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_today(now: Optional[datetime] = None) -> date:
    return to_utc(now or utc_now()).date()


def as_utc_day(value: Union[date, datetime]) -> date:
    """UTC calendar day of a date or datetime."""
    if isinstance(value, datetime):
        return to_utc(value).date()
    return value


def day_bounds(day: Union[date, datetime]) -> Tuple[datetime, datetime]:
    """Half-open [start_of_day, start_of_day + 24h) in UTC."""
    start = datetime.combine(as_utc_day(day), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def split_window(days: int, now: Optional[datetime] = None) -> UsageWindow:
    """Split a trailing window of `days` calendar days ending now.

    Today always counts as one of the days, so the historical part covers
    the days - 1 complete days before it. A day count below 1 is treated
    as 1.

    Args:
        days: Number of calendar days, today included
        now: Current instant (defaults to the current UTC time)

    Returns:
        UsageWindow with disjoint historical and live ranges
    """
    days = max(1, int(days))
    now = to_utc(now or utc_now())
    today = now.date()
    live_start, _ = day_bounds(today)
    return UsageWindow(
        historical_start=today - timedelta(days=days - 1),
        historical_end=today,
        live_start=live_start,
        live_end=now,
    )
