"""
Usage queries for dashboards.

Combines pre-computed daily rollups with live ledger data for today.

Merge rules:
1. Historical days come only from rollups, today only from the ledger.
   split_window() keeps the two ranges disjoint, so totals simply add.
2. The provider filter is applied identically to both sources.
3. Costs merge by addition; active users merge by set union.

Read failures never reach a dashboard: they are logged and an empty result
of the right shape is returned instead.
"""

import functools
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from voravia_meter.storage.db import DEFAULT_DB_PATH, read_snapshot
from voravia_meter.storage.models import ServiceCost, SubjectCost, UsageEvent
from voravia_meter.storage.repository import UsageRepository, normalize_provider
from voravia_meter.storage.rollups import RollupRepository

from .window import UsageWindow, split_window

logger = logging.getLogger(__name__)

MONEY_PLACES = 8


def _money(amount: float) -> float:
    return round(amount, MONEY_PLACES)


@dataclass
class WindowSummary:
    """Cost of one billing owner over a trailing window."""
    total_cost_usd: float = 0.0
    today_so_far_usd: float = 0.0
    by_subject_user_id: Dict[Optional[str], float] = field(default_factory=dict)
    by_service: List[ServiceCost] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalCostUsd": self.total_cost_usd,
            "todaySoFarUsd": self.today_so_far_usd,
            "bySubjectUserId": dict(self.by_subject_user_id),
            "byService": [s.to_dict() for s in self.by_service],
        }


@dataclass
class UsageSummary:
    """Global cost over a trailing window, split into rollup and live parts."""
    total_rollup_usd: float = 0.0
    today_so_far_usd: float = 0.0
    total_usd: float = 0.0
    total_events: int = 0
    by_service: List[ServiceCost] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRollupUsd": self.total_rollup_usd,
            "todaySoFarUsd": self.today_so_far_usd,
            "totalUsd": self.total_usd,
            "totalEvents": self.total_events,
            "byService": [s.to_dict() for s in self.by_service],
        }


@dataclass
class CostPerActiveUser:
    total_usd: float = 0.0
    active_users: int = 0
    cost_per_active_user_usd: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalUsd": self.total_usd,
            "activeUsers": self.active_users,
            "costPerActiveUserUsd": self.cost_per_active_user_usd,
        }


@dataclass(frozen=True)
class DayCost:
    day: date
    cost_usd: float
    events: int

    def to_dict(self) -> Dict[str, Any]:
        return {"day": self.day.isoformat(), "costUsd": self.cost_usd, "events": self.events}


def _degrades_to(empty: Callable[[], Any]):
    """Log read-path failures and return an empty result instead of raising."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (sqlite3.Error, ValueError, TypeError, OverflowError) as e:
                logger.warning("Usage query %s failed, returning empty result: %s", func.__name__, e)
                return empty()
        return wrapper
    return decorator


@contextmanager
def _stores(db_path: str) -> Iterator[Tuple[UsageRepository, RollupRepository]]:
    """Both stores reading one snapshot, so a concurrent rollup cannot split a result."""
    with read_snapshot(db_path) as conn:
        yield (
            UsageRepository(db_path, connection=conn),
            RollupRepository(db_path, connection=conn),
        )


def merge_service_costs(*sources: Iterable[ServiceCost]) -> List[ServiceCost]:
    """Add up costs and events per provider/service, most expensive first."""
    merged: Dict[Tuple[str, str], List[float]] = {}
    for source in sources:
        for item in source:
            totals = merged.setdefault((item.provider, item.service), [0.0, 0])
            totals[0] += item.cost_usd
            totals[1] += item.events
    result = [
        ServiceCost(provider=provider, service=service, cost_usd=_money(cost), events=int(events))
        for (provider, service), (cost, events) in merged.items()
    ]
    result.sort(key=lambda s: (-s.cost_usd, s.provider, s.service))
    return result


def merge_subject_costs(*sources: Iterable[SubjectCost]) -> Dict[Optional[str], float]:
    """Add up costs per subject; an absent subject is keyed by None."""
    merged: Dict[Optional[str], float] = {}
    for source in sources:
        for item in source:
            merged[item.subject_user_id] = merged.get(item.subject_user_id, 0.0) + item.cost_usd
    ordered = sorted(merged.items(), key=lambda kv: -kv[1])
    return {subject: _money(cost) for subject, cost in ordered}


def _live_range(window: UsageWindow) -> Tuple[datetime, datetime]:
    return window.live_start, window.live_end


def _historical_range(window: UsageWindow) -> Tuple[date, date]:
    return window.historical_start, window.historical_end


@_degrades_to(WindowSummary)
def window_summary(
    billing_owner_id: str,
    days: int = 30,
    provider: Optional[str] = "all",
    *,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
) -> WindowSummary:
    """Cost of one billing owner over the trailing `days` window.

    Args:
        billing_owner_id: Account whose usage is summed
        days: Window length in calendar days, today included
        provider: Provider filter, "all" for every provider
        db_path: Path to SQLite database file
        now: Current instant (defaults to the current UTC time)

    Returns:
        WindowSummary merging rollups with today's live events
    """
    if not billing_owner_id:
        raise ValueError("billing_owner_id is required")
    provider = normalize_provider(provider)
    window = split_window(days, now)
    with _stores(db_path) as (events, rollups):
        rollup_cost, _ = rollups.totals(*_historical_range(window), billing_owner_id, provider)
        live_cost = events.sum_range(*_live_range(window), billing_owner_id, provider)

        by_subject = merge_subject_costs(
            rollups.by_subject(*_historical_range(window), billing_owner_id, provider),
            events.sum_range_by_subject(*_live_range(window), billing_owner_id, provider),
        )
        by_service = merge_service_costs(
            rollups.by_service(*_historical_range(window), billing_owner_id, provider),
            events.sum_range_by_service(*_live_range(window), billing_owner_id, provider),
        )

    return WindowSummary(
        total_cost_usd=_money(rollup_cost + live_cost),
        today_so_far_usd=_money(live_cost),
        by_subject_user_id=by_subject,
        by_service=by_service,
    )


def group_usage(
    billing_owner_id: str,
    days: int = 30,
    provider: Optional[str] = "all",
    *,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
) -> WindowSummary:
    """Usage of a family or workplace group, keyed by its billing owner."""
    return window_summary(billing_owner_id, days, provider, db_path=db_path, now=now)


@_degrades_to(UsageSummary)
def usage_summary(
    days: int = 30,
    provider: Optional[str] = "all",
    *,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
) -> UsageSummary:
    """Cost across every billing owner over the trailing window."""
    provider = normalize_provider(provider)
    window = split_window(days, now)
    with _stores(db_path) as (events, rollups):
        rollup_cost, rollup_events = rollups.totals(*_historical_range(window), provider=provider)
        live_cost = events.sum_range(*_live_range(window), provider=provider)
        live_events = events.count_range(*_live_range(window), provider=provider)

        by_service = merge_service_costs(
            rollups.by_service(*_historical_range(window), provider=provider),
            events.sum_range_by_service(*_live_range(window), provider=provider),
        )

    return UsageSummary(
        total_rollup_usd=_money(rollup_cost),
        today_so_far_usd=_money(live_cost),
        total_usd=_money(rollup_cost + live_cost),
        total_events=rollup_events + live_events,
        by_service=by_service,
    )


@_degrades_to(CostPerActiveUser)
def cost_per_active_user(
    days: int = 30,
    provider: Optional[str] = "all",
    *,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
) -> CostPerActiveUser:
    """Average cost per distinct subject over the trailing window.

    Unlike cost, subjects are not additive: a member seen both in the
    rollups and today counts once.
    """
    provider = normalize_provider(provider)
    window = split_window(days, now)
    with _stores(db_path) as (events, rollups):
        rollup_cost, _ = rollups.totals(*_historical_range(window), provider=provider)
        live_cost = events.sum_range(*_live_range(window), provider=provider)
        total = rollup_cost + live_cost

        subjects = rollups.subjects(*_historical_range(window), provider=provider)
        subjects |= events.subjects_in_range(*_live_range(window), provider=provider)
        active = len(subjects)

    return CostPerActiveUser(
        total_usd=_money(total),
        active_users=active,
        cost_per_active_user_usd=_money(total / active) if active else 0.0,
    )


@_degrades_to(list)
def usage_by_day(
    days: int = 30,
    provider: Optional[str] = "all",
    billing_owner_id: Optional[str] = None,
    *,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
) -> List[DayCost]:
    """Daily cost series for the window, oldest first, zero-filled.

    Past days come from rollups and the last entry (today) from the ledger.
    """
    provider = normalize_provider(provider)
    window = split_window(days, now)
    with _stores(db_path) as (events, rollups):
        per_day = rollups.by_day(*_historical_range(window), billing_owner_id, provider)
        per_day[window.today] = (
            events.sum_range(*_live_range(window), billing_owner_id, provider),
            events.count_range(*_live_range(window), billing_owner_id, provider),
        )

    series = []
    for day in window.days():
        cost, count = per_day.get(day, (0.0, 0))
        series.append(DayCost(day=day, cost_usd=_money(cost), events=count))
    return series


@_degrades_to(list)
def recent_events(
    billing_owner_id: Optional[str] = None,
    provider: Optional[str] = "all",
    limit: int = 100,
    *,
    db_path: str = DEFAULT_DB_PATH,
    max_query_limit: Optional[int] = None,
) -> List[UsageEvent]:
    """Most recent ledger entries, bounded by the repository's limit cap."""
    repository = (
        UsageRepository(db_path, max_query_limit) if max_query_limit else UsageRepository(db_path)
    )
    return repository.query(billing_owner_id=billing_owner_id, provider=provider, limit=limit)
