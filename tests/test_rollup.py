"""
Unit tests for the daily rollup engine.

Tests sums, idempotence, day boundaries and atomic replacement.
"""

import sqlite3
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from voravia_meter.core.rollup import default_rollup_day, run_daily_rollup
from voravia_meter.storage.models import UsageAggregate
from voravia_meter.storage.repository import UsageRepository
from voravia_meter.storage.rollups import RollupRepository

from conftest import NOW

DAY = date(2025, 3, 9)
DAY_START = datetime(2025, 3, 9, tzinfo=timezone.utc)


def rollup_rows(db_path, day=DAY):
    return RollupRepository(db_path).fetch_day(day)


class TestRollupSums:
    """Rollup rows must add up to the events of the day."""

    def test_rollup_total_equals_event_total(self, db_path, emit):
        costs = [0.0032, 0.01, 0.02, 0.032, 0.0007]
        for i, cost in enumerate(costs):
            emit(DAY_START + timedelta(hours=i * 3), cost, subject=f"mem_{i % 2}")

        result = run_daily_rollup(DAY, db_path=db_path)

        rows = rollup_rows(db_path)
        assert result.day == DAY
        assert result.rows_written == len(rows) == 2
        assert sum(r.cost_usd for r in rows) == pytest.approx(sum(costs))
        assert sum(r.events for r in rows) == len(costs)

    def test_grouped_by_all_dimensions(self, db_path, emit):
        emit(DAY_START, 0.01, owner="o1", actor="a1", subject="s1")
        emit(DAY_START, 0.01, owner="o1", actor="a2", subject="s1")
        emit(DAY_START, 0.01, owner="o2", actor="a1", subject="s1")
        emit(DAY_START, 0.01, owner="o1", actor="a1", subject="s2")
        emit(DAY_START, 0.032, owner="o1", actor="a1", subject="s1",
             provider="google", service="google_places_searchNearby")
        emit(DAY_START, 0.01, owner="o1", actor="a1", subject="s1")

        run_daily_rollup(DAY, db_path=db_path)

        rows = rollup_rows(db_path)
        assert len(rows) == 5
        key = ("o1", "a1", "s1", "openai", "openai_scan_vision")
        [match] = [r for r in rows if (r.billing_owner_id, r.actor_user_id, r.subject_user_id,
                                       r.provider, r.service) == key]
        assert match.events == 2
        assert match.units == 2
        assert match.cost_usd == pytest.approx(0.02)

    def test_two_subjects_same_service(self, db_path, emit):
        emit(DAY_START + timedelta(hours=1), 0.01, subject="mem_1")
        emit(DAY_START + timedelta(hours=2), 0.02, subject="mem_2")

        run_daily_rollup(DAY, db_path=db_path)

        rows = rollup_rows(db_path)
        assert {r.subject_user_id for r in rows} == {"mem_1", "mem_2"}
        by_service = RollupRepository(db_path).by_service(DAY, DAY + timedelta(days=1))
        assert len(by_service) == 1
        assert by_service[0].cost_usd == pytest.approx(0.03)
        assert by_service[0].events == 2

    def test_absent_subject_rolls_up_as_one_key(self, db_path, emit):
        emit(DAY_START, 0.01, subject=None)
        emit(DAY_START, 0.02, subject=None)

        run_daily_rollup(DAY, db_path=db_path)

        [row] = rollup_rows(db_path)
        assert row.subject_user_id is None
        assert row.events == 2

    def test_empty_day_writes_no_rows(self, db_path):
        result = run_daily_rollup(DAY, db_path=db_path)
        assert result.rows_written == 0
        assert rollup_rows(db_path) == []


class TestRollupBoundaries:
    """Events are assigned to UTC days with a half-open window."""

    def test_event_at_start_of_day_included(self, db_path, emit):
        emit(DAY_START, 0.01)
        run_daily_rollup(DAY, db_path=db_path)
        assert sum(r.events for r in rollup_rows(db_path)) == 1

    def test_event_at_next_midnight_excluded(self, db_path, emit):
        emit(DAY_START + timedelta(days=1), 0.01)
        emit(DAY_START + timedelta(days=1) - timedelta(microseconds=1), 0.02)

        run_daily_rollup(DAY, db_path=db_path)
        [row] = rollup_rows(db_path)
        assert row.cost_usd == pytest.approx(0.02)

        run_daily_rollup(DAY + timedelta(days=1), db_path=db_path)
        [next_row] = rollup_rows(db_path, DAY + timedelta(days=1))
        assert next_row.cost_usd == pytest.approx(0.01)

    def test_default_day_is_yesterday(self, db_path, emit):
        emit(DAY_START + timedelta(hours=5), 0.01)
        emit(NOW - timedelta(minutes=5), 0.5)

        result = run_daily_rollup(db_path=db_path, now=NOW)

        assert default_rollup_day(NOW) == DAY
        assert result.day == DAY
        assert sum(r.cost_usd for r in rollup_rows(db_path)) == pytest.approx(0.01)

    def test_datetime_argument_uses_utc_day(self, db_path, emit):
        emit(DAY_START + timedelta(hours=5), 0.01)
        result = run_daily_rollup(DAY_START + timedelta(hours=23), db_path=db_path)
        assert result.day == DAY


class TestRollupIdempotence:
    """Reruns replace the day instead of accumulating."""

    def test_running_twice_yields_identical_rows(self, db_path, emit):
        emit(DAY_START, 0.01, subject="mem_1")
        emit(DAY_START, 0.02, subject="mem_2")

        first = run_daily_rollup(DAY, db_path=db_path)
        rows_first = rollup_rows(db_path)
        second = run_daily_rollup(DAY, db_path=db_path)
        rows_second = rollup_rows(db_path)

        assert first == second
        assert rows_first == rows_second

    def test_rerun_picks_up_late_events(self, db_path, emit):
        emit(DAY_START, 0.01)
        run_daily_rollup(DAY, db_path=db_path)

        emit(DAY_START + timedelta(hours=20), 0.02)
        run_daily_rollup(DAY, db_path=db_path)

        [row] = rollup_rows(db_path)
        assert row.events == 2
        assert row.cost_usd == pytest.approx(0.03)

    def test_rerun_leaves_other_days_alone(self, db_path, emit):
        emit(DAY_START, 0.01)
        emit(DAY_START - timedelta(days=1), 0.05)
        run_daily_rollup(DAY - timedelta(days=1), db_path=db_path)
        run_daily_rollup(DAY, db_path=db_path)
        run_daily_rollup(DAY, db_path=db_path)

        [older] = rollup_rows(db_path, DAY - timedelta(days=1))
        assert older.cost_usd == pytest.approx(0.05)


class TestRollupAtomicity:
    """A failed rerun must leave the previous rows in place."""

    def test_failed_insert_rolls_back_delete(self, db_path, emit):
        emit(DAY_START, 0.01)
        run_daily_rollup(DAY, db_path=db_path)
        before = rollup_rows(db_path)

        broken = [UsageAggregate(
            billing_owner_id="o1", actor_user_id="a1", subject_user_id="s1",
            provider=None, service="svc", events=1, units=1, cost_usd=1.0,
        )]
        with patch.object(UsageRepository, "aggregate_range", return_value=broken):
            with pytest.raises(sqlite3.IntegrityError):
                run_daily_rollup(DAY, db_path=db_path)

        assert rollup_rows(db_path) == before

    def test_read_failure_propagates(self, db_path):
        with patch.object(UsageRepository, "aggregate_range",
                          side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(sqlite3.OperationalError):
                run_daily_rollup(DAY, db_path=db_path)
