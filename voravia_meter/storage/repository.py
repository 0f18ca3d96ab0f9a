"""
Repository pattern for the usage event ledger.

Handles schema creation, appends, and the range aggregations the rollup
engine and query layer read from.
"""

import json
import sqlite3
from datetime import datetime
from typing import Any, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, format_timestamp, get_connection, parse_timestamp, reading
from .models import ServiceCost, SubjectCost, UsageAggregate, UsageEvent

ALL_PROVIDERS = "all"
DEFAULT_MAX_QUERY_LIMIT = 500

_EVENT_COLUMNS = """
    id, timestamp, request_id, actor_user_id, billing_owner_id,
    subject_user_id, mode, provider, service, units, unit_cost_usd,
    cost_usd, metadata
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage ledger and rollup tables if they don't exist.

    usage_event is an append-only ledger: triggers abort any UPDATE or
    DELETE so that recorded costs can never be rewritten.

    usage_daily_rollup stores an absent subject as '' because SQLite treats
    NULLs as distinct inside UNIQUE constraints.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS usage_event (
                id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                request_id TEXT,
                actor_user_id TEXT NOT NULL,
                billing_owner_id TEXT NOT NULL,
                subject_user_id TEXT,
                mode TEXT NOT NULL,
                provider TEXT NOT NULL,
                service TEXT NOT NULL,
                units INTEGER NOT NULL,
                unit_cost_usd REAL NOT NULL,
                cost_usd REAL NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}'
            );

            CREATE INDEX IF NOT EXISTS idx_usage_event_ts
                ON usage_event (timestamp);
            CREATE INDEX IF NOT EXISTS idx_usage_event_owner_ts
                ON usage_event (billing_owner_id, timestamp);
            CREATE INDEX IF NOT EXISTS idx_usage_event_provider_service_ts
                ON usage_event (provider, service, timestamp);

            CREATE TRIGGER IF NOT EXISTS usage_event_no_update
                BEFORE UPDATE ON usage_event
            BEGIN
                SELECT RAISE(ABORT, 'usage_event is append-only');
            END;

            CREATE TRIGGER IF NOT EXISTS usage_event_no_delete
                BEFORE DELETE ON usage_event
            BEGIN
                SELECT RAISE(ABORT, 'usage_event is append-only');
            END;

            CREATE TABLE IF NOT EXISTS usage_daily_rollup (
                day TEXT NOT NULL,
                billing_owner_id TEXT NOT NULL,
                actor_user_id TEXT NOT NULL,
                subject_user_id TEXT NOT NULL DEFAULT '',
                provider TEXT NOT NULL,
                service TEXT NOT NULL,
                events INTEGER NOT NULL,
                units INTEGER NOT NULL,
                cost_usd REAL NOT NULL,
                computed_at TEXT NOT NULL,
                UNIQUE (day, billing_owner_id, actor_user_id,
                        subject_user_id, provider, service)
            );

            CREATE INDEX IF NOT EXISTS idx_rollup_day
                ON usage_daily_rollup (day);
            CREATE INDEX IF NOT EXISTS idx_rollup_owner_day
                ON usage_daily_rollup (billing_owner_id, day);
            CREATE INDEX IF NOT EXISTS idx_rollup_actor_day
                ON usage_daily_rollup (actor_user_id, day);
            CREATE INDEX IF NOT EXISTS idx_rollup_subject_day
                ON usage_daily_rollup (subject_user_id, day);
        """)
        conn.commit()
    finally:
        conn.close()


def normalize_provider(provider: Optional[str]) -> Optional[str]:
    """Map the "all" sentinel (and empty values) to no provider filter."""
    if provider is None:
        return None
    provider = str(provider).strip()
    if not provider or provider.lower() == ALL_PROVIDERS:
        return None
    return provider


def _range_conditions(
    start: datetime,
    end: datetime,
    billing_owner_id: Optional[str],
    provider: Optional[str],
) -> Tuple[str, List[Any]]:
    """Build the WHERE clause shared by every range query.

    The range is half-open, [start, end), so an event at the next midnight
    belongs to the next day only.
    """
    conditions = ["timestamp >= ?", "timestamp < ?"]
    params: List[Any] = [format_timestamp(start), format_timestamp(end)]

    if billing_owner_id is not None:
        conditions.append("billing_owner_id = ?")
        params.append(billing_owner_id)
    provider = normalize_provider(provider)
    if provider is not None:
        conditions.append("provider = ?")
        params.append(provider)

    return " WHERE " + " AND ".join(conditions), params


def _row_to_event(row: tuple) -> UsageEvent:
    return UsageEvent(
        id=row[0],
        timestamp=parse_timestamp(row[1]),
        request_id=row[2],
        actor_user_id=row[3],
        billing_owner_id=row[4],
        subject_user_id=row[5],
        mode=row[6],
        provider=row[7],
        service=row[8],
        units=row[9],
        unit_cost_usd=row[10],
        cost_usd=row[11],
        metadata=json.loads(row[12]) if row[12] else {},
    )


class UsageRepository:
    """Event store for billable usage events.

    Every method opens its own connection, so one repository can be shared
    by concurrently running request handlers; SQLite serializes the writes.
    Reads go through `connection` instead when one is given, which lets
    several reads share one snapshot.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        max_query_limit: int = DEFAULT_MAX_QUERY_LIMIT,
        connection: Optional[sqlite3.Connection] = None,
    ):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            max_query_limit: Upper bound applied to every event listing
            connection: Shared connection for reads (see read_snapshot)
        """
        if max_query_limit <= 0:
            raise ValueError("max_query_limit must be > 0")
        self.db_path = db_path
        self.max_query_limit = max_query_limit
        self.connection = connection

    def insert(self, event: UsageEvent) -> UsageEvent:
        """Append a single usage event to the ledger.

        The row is committed before this returns. Database errors propagate
        to the caller without modification.

        Args:
            event: The usage event to record

        Returns:
            The event that was written
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO usage_event ({_EVENT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                str(event.id),
                format_timestamp(event.timestamp),
                event.request_id,
                str(event.actor_user_id),
                str(event.billing_owner_id),
                str(event.subject_user_id) if event.subject_user_id else None,
                str(event.mode),
                str(event.provider),
                str(event.service),
                int(event.units),
                float(event.unit_cost_usd),
                float(event.cost_usd),
                json.dumps(event.metadata or {}, default=str),
            ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return event

    def clamp_limit(self, limit: int) -> int:
        return max(1, min(int(limit), self.max_query_limit))

    def query(
        self,
        billing_owner_id: Optional[str] = None,
        provider: Optional[str] = None,
        limit: int = 100,
    ) -> List[UsageEvent]:
        """Fetch recent usage events, optionally filtered by owner and provider.

        Args:
            billing_owner_id: Optional filter for one billing owner
            provider: Optional provider filter ("all" means no filter)
            limit: Requested row count, clamped to [1, max_query_limit]

        Returns:
            List of usage events ordered by timestamp (newest first)
        """
        query = f"SELECT {_EVENT_COLUMNS} FROM usage_event"
        params: List[Any] = []
        conditions = []

        if billing_owner_id is not None:
            conditions.append("billing_owner_id = ?")
            params.append(billing_owner_id)
        provider = normalize_provider(provider)
        if provider is not None:
            conditions.append("provider = ?")
            params.append(provider)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY timestamp DESC LIMIT ?"
        params.append(self.clamp_limit(limit))

        with reading(self.db_path, self.connection) as conn:
            cursor = conn.execute(query, params)
            return [_row_to_event(row) for row in cursor.fetchall()]

    def sum_range(
        self,
        start: datetime,
        end: datetime,
        billing_owner_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> float:
        """Total cost of events with start <= timestamp < end."""
        where, params = _range_conditions(start, end, billing_owner_id, provider)
        with reading(self.db_path, self.connection) as conn:
            row = conn.execute(
                "SELECT SUM(cost_usd) FROM usage_event" + where, params
            ).fetchone()
            return float(row[0] or 0)

    def count_range(
        self,
        start: datetime,
        end: datetime,
        billing_owner_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> int:
        """Number of events with start <= timestamp < end."""
        where, params = _range_conditions(start, end, billing_owner_id, provider)
        with reading(self.db_path, self.connection) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM usage_event" + where, params
            ).fetchone()
            return int(row[0] or 0)

    def sum_range_by_subject(
        self,
        start: datetime,
        end: datetime,
        billing_owner_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> List[SubjectCost]:
        """Cost per subject in the range, most expensive first."""
        where, params = _range_conditions(start, end, billing_owner_id, provider)
        with reading(self.db_path, self.connection) as conn:
            cursor = conn.execute(f"""
                SELECT subject_user_id, SUM(cost_usd), COUNT(*)
                FROM usage_event{where}
                GROUP BY subject_user_id
                ORDER BY SUM(cost_usd) DESC
            """, params)
            return [
                SubjectCost(subject_user_id=row[0], cost_usd=float(row[1] or 0), events=row[2])
                for row in cursor.fetchall()
            ]

    def sum_range_by_service(
        self,
        start: datetime,
        end: datetime,
        billing_owner_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> List[ServiceCost]:
        """Cost per provider/service pair in the range, most expensive first."""
        where, params = _range_conditions(start, end, billing_owner_id, provider)
        with reading(self.db_path, self.connection) as conn:
            cursor = conn.execute(f"""
                SELECT provider, service, SUM(cost_usd), COUNT(*)
                FROM usage_event{where}
                GROUP BY provider, service
                ORDER BY SUM(cost_usd) DESC
            """, params)
            return [
                ServiceCost(
                    provider=row[0],
                    service=row[1],
                    cost_usd=float(row[2] or 0),
                    events=row[3],
                )
                for row in cursor.fetchall()
            ]

    def subjects_in_range(
        self,
        start: datetime,
        end: datetime,
        billing_owner_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> set:
        """Distinct non-empty subjects with at least one event in the range."""
        where, params = _range_conditions(start, end, billing_owner_id, provider)
        with reading(self.db_path, self.connection) as conn:
            cursor = conn.execute(
                "SELECT DISTINCT subject_user_id FROM usage_event"
                + where
                + " AND subject_user_id IS NOT NULL AND subject_user_id != ''",
                params,
            )
            return {row[0] for row in cursor.fetchall()}

    def aggregate_range(self, start: datetime, end: datetime) -> List[UsageAggregate]:
        """Group events in [start, end) by the rollup dimensions."""
        where, params = _range_conditions(start, end, None, None)
        with reading(self.db_path, self.connection) as conn:
            cursor = conn.execute(f"""
                SELECT billing_owner_id, actor_user_id, subject_user_id,
                       provider, service,
                       COUNT(*), SUM(units), SUM(cost_usd)
                FROM usage_event{where}
                GROUP BY billing_owner_id, actor_user_id, subject_user_id,
                         provider, service
            """, params)
            return [
                UsageAggregate(
                    billing_owner_id=row[0],
                    actor_user_id=row[1],
                    subject_user_id=row[2],
                    provider=row[3],
                    service=row[4],
                    events=row[5],
                    units=int(row[6] or 0),
                    cost_usd=float(row[7] or 0),
                )
                for row in cursor.fetchall()
            ]

