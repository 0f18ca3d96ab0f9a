"""
Daily rollup table access.

The rollup engine is the only writer; the query layer reads through the
range helpers below.
"""

import sqlite3
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, format_day, format_timestamp, get_connection, parse_day, reading
from .models import DailyRollup, ServiceCost, SubjectCost, UsageAggregate
from .repository import normalize_provider

_NO_SUBJECT = ""


def _subject_key(subject_user_id: Optional[str]) -> str:
    return subject_user_id or _NO_SUBJECT


def _subject_value(stored: str) -> Optional[str]:
    return stored or None


def _day_conditions(
    start_day: date,
    end_day: date,
    billing_owner_id: Optional[str],
    provider: Optional[str],
) -> Tuple[str, List[Any]]:
    """WHERE clause for start_day <= day < end_day."""
    conditions = ["day >= ?", "day < ?"]
    params: List[Any] = [format_day(start_day), format_day(end_day)]

    if billing_owner_id is not None:
        conditions.append("billing_owner_id = ?")
        params.append(billing_owner_id)
    provider = normalize_provider(provider)
    if provider is not None:
        conditions.append("provider = ?")
        params.append(provider)

    return " WHERE " + " AND ".join(conditions), params


class RollupRepository:
    """Reads and replaces rows of usage_daily_rollup."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        connection: Optional[sqlite3.Connection] = None,
    ):
        self.db_path = db_path
        self.connection = connection

    def replace_day(self, day: date, aggregates: List[UsageAggregate]) -> int:
        """Atomically swap every rollup row of one day for fresh aggregates.

        The delete and the inserts share one IMMEDIATE transaction, so a
        concurrent reader sees either the previous rows or the new ones,
        never an empty day. On failure the transaction is rolled back and
        the previous rows are left untouched.

        Args:
            day: UTC calendar day being replaced
            aggregates: Grouped event sums for that day

        Returns:
            Number of rows written
        """
        computed_at = format_timestamp(datetime.now(timezone.utc))
        day_key = format_day(day)

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM usage_daily_rollup WHERE day = ?", (day_key,))
            conn.executemany("""
                INSERT INTO usage_daily_rollup
                (day, billing_owner_id, actor_user_id, subject_user_id,
                 provider, service, events, units, cost_usd, computed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    day_key,
                    agg.billing_owner_id,
                    agg.actor_user_id,
                    _subject_key(agg.subject_user_id),
                    agg.provider,
                    agg.service,
                    agg.events,
                    agg.units,
                    agg.cost_usd,
                    computed_at,
                )
                for agg in aggregates
            ])
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return len(aggregates)

    def fetch_day(self, day: date) -> List[DailyRollup]:
        with reading(self.db_path, self.connection) as conn:
            cursor = conn.execute("""
                SELECT day, billing_owner_id, actor_user_id, subject_user_id,
                       provider, service, events, units, cost_usd
                FROM usage_daily_rollup
                WHERE day = ?
                ORDER BY billing_owner_id, actor_user_id, subject_user_id,
                         provider, service
            """, (format_day(day),))
            return [
                DailyRollup(
                    day=parse_day(row[0]),
                    billing_owner_id=row[1],
                    actor_user_id=row[2],
                    subject_user_id=_subject_value(row[3]),
                    provider=row[4],
                    service=row[5],
                    events=row[6],
                    units=row[7],
                    cost_usd=row[8],
                )
                for row in cursor.fetchall()
            ]

    def totals(
        self,
        start_day: date,
        end_day: date,
        billing_owner_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> Tuple[float, int]:
        """Summed (cost, events) over rollup days in [start_day, end_day)."""
        where, params = _day_conditions(start_day, end_day, billing_owner_id, provider)
        with reading(self.db_path, self.connection) as conn:
            row = conn.execute(
                "SELECT SUM(cost_usd), SUM(events) FROM usage_daily_rollup" + where,
                params,
            ).fetchone()
            return float(row[0] or 0), int(row[1] or 0)

    def by_subject(
        self,
        start_day: date,
        end_day: date,
        billing_owner_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> List[SubjectCost]:
        where, params = _day_conditions(start_day, end_day, billing_owner_id, provider)
        with reading(self.db_path, self.connection) as conn:
            cursor = conn.execute(f"""
                SELECT subject_user_id, SUM(cost_usd), SUM(events)
                FROM usage_daily_rollup{where}
                GROUP BY subject_user_id
                ORDER BY SUM(cost_usd) DESC
            """, params)
            return [
                SubjectCost(
                    subject_user_id=_subject_value(row[0]),
                    cost_usd=float(row[1] or 0),
                    events=int(row[2] or 0),
                )
                for row in cursor.fetchall()
            ]

    def by_service(
        self,
        start_day: date,
        end_day: date,
        billing_owner_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> List[ServiceCost]:
        where, params = _day_conditions(start_day, end_day, billing_owner_id, provider)
        with reading(self.db_path, self.connection) as conn:
            cursor = conn.execute(f"""
                SELECT provider, service, SUM(cost_usd), SUM(events)
                FROM usage_daily_rollup{where}
                GROUP BY provider, service
                ORDER BY SUM(cost_usd) DESC
            """, params)
            return [
                ServiceCost(
                    provider=row[0],
                    service=row[1],
                    cost_usd=float(row[2] or 0),
                    events=int(row[3] or 0),
                )
                for row in cursor.fetchall()
            ]

    def by_day(
        self,
        start_day: date,
        end_day: date,
        billing_owner_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> Dict[date, Tuple[float, int]]:
        """(cost, events) per rollup day in [start_day, end_day)."""
        where, params = _day_conditions(start_day, end_day, billing_owner_id, provider)
        with reading(self.db_path, self.connection) as conn:
            cursor = conn.execute(f"""
                SELECT day, SUM(cost_usd), SUM(events)
                FROM usage_daily_rollup{where}
                GROUP BY day
            """, params)
            return {
                parse_day(row[0]): (float(row[1] or 0), int(row[2] or 0))
                for row in cursor.fetchall()
            }

    def subjects(
        self,
        start_day: date,
        end_day: date,
        billing_owner_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> set:
        """Distinct non-empty subjects present in rollups for the day range."""
        where, params = _day_conditions(start_day, end_day, billing_owner_id, provider)
        with reading(self.db_path, self.connection) as conn:
            cursor = conn.execute(
                "SELECT DISTINCT subject_user_id FROM usage_daily_rollup"
                + where
                + " AND subject_user_id != ''",
                params,
            )
            return {row[0] for row in cursor.fetchall()}
