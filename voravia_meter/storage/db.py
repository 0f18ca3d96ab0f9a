"""
Database connection management.

Provides SQLite connections and timestamp encoding for the metering store.
"""

import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

DEFAULT_DB_PATH = "voravia_meter.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, create: bool = True) -> sqlite3.Connection:
    """Create and return a SQLite connection configured for concurrent writers.

    WAL mode lets readers proceed while a writer holds the lock, the busy
    timeout makes concurrent inserts wait instead of failing, and
    synchronous=FULL makes every commit durable before it returns.

    Args:
        db_path: Path to SQLite database file
        create: Create the file if it is missing; read paths pass False
            and get sqlite3.OperationalError for a missing database

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    if create:
        conn = sqlite3.connect(str(path), timeout=30)
    else:
        conn = sqlite3.connect(path.resolve().as_uri() + "?mode=rw", uri=True, timeout=30)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = FULL")
    conn.execute("PRAGMA busy_timeout = 30000")
    return conn


@contextmanager
def reading(
    db_path: str,
    connection: Optional[sqlite3.Connection] = None,
) -> Iterator[sqlite3.Connection]:
    """Yield a connection for reads.

    A shared connection is yielded as-is and left open; otherwise a new
    non-creating connection is opened and closed afterwards.
    """
    if connection is not None:
        yield connection
        return
    conn = get_connection(db_path, create=False)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def read_snapshot(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Yield one connection inside a read transaction.

    Every SELECT made through it sees the database as of the first read,
    so writes committed meanwhile by other connections stay invisible.
    """
    conn = get_connection(db_path, create=False)
    try:
        conn.execute("BEGIN")
        yield conn
    finally:
        conn.close()


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Encode a datetime so that string order matches time order."""
    return to_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    return to_utc(datetime.fromisoformat(value))


def format_day(value: date) -> str:
    return value.isoformat()


def parse_day(value: str) -> date:
    return date.fromisoformat(value)
