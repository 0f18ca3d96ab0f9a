"""
Daily rollup of the usage ledger.

Folds one UTC day of usage events into per-(owner, actor, subject,
provider, service) rows. A run replaces the whole day, so reruns and
backfills are idempotent.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union

from voravia_meter.storage.db import DEFAULT_DB_PATH
from voravia_meter.storage.repository import UsageRepository
from voravia_meter.storage.rollups import RollupRepository

from .window import as_utc_day, day_bounds, utc_today

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RollupResult:
    day: date
    rows_written: int


def default_rollup_day(now: Optional[datetime] = None) -> date:
    """Yesterday in UTC; today is still incomplete and is read live instead."""
    return utc_today(now) - timedelta(days=1)


def run_daily_rollup(
    day: Optional[Union[date, datetime]] = None,
    *,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
    events: Optional[UsageRepository] = None,
    rollups: Optional[RollupRepository] = None,
) -> RollupResult:
    """Recompute the rollup rows for one UTC day.

    Args:
        day: Day to roll up (defaults to yesterday in UTC)
        db_path: Path to SQLite database file
        now: Current instant used to resolve the default day
        events: Event store to read from (defaults to one on db_path)
        rollups: Rollup table to write to (defaults to one on db_path)

    Returns:
        RollupResult with the processed day and the number of rows written

    Raises:
        sqlite3.Error: If reading events or replacing the day fails; the
            previous rollup rows for the day are then left as they were
    """
    target = as_utc_day(day) if day is not None else default_rollup_day(now)
    events = events or UsageRepository(db_path)
    rollups = rollups or RollupRepository(db_path)

    start, end = day_bounds(target)
    aggregates = events.aggregate_range(start, end)
    rows_written = rollups.replace_day(target, aggregates)

    logger.info("Rolled up usage for %s: %d rows", target.isoformat(), rows_written)
    return RollupResult(day=target, rows_written=rows_written)
