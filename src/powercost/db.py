"""Database connection, schema management and the persistence layer."""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterator

from .models import DailyAggregate, PowerReading, Session, SourceId

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "powercost-tracker" / "powercost.db"

SCHEMA = """
-- Resolved power readings (every Nth fast tick)
CREATE TABLE IF NOT EXISTS power_readings (
    id INTEGER PRIMARY KEY,
    timestamp TEXT NOT NULL,
    power_watts REAL NOT NULL,
    source TEXT NOT NULL,
    is_estimated INTEGER NOT NULL DEFAULT 0,
    components TEXT
);

-- Per-day energy and cost totals
CREATE TABLE IF NOT EXISTS daily_stats (
    date TEXT PRIMARY KEY,
    total_wh REAL NOT NULL,
    total_cost REAL,
    avg_watts REAL,
    max_watts REAL,
    pricing_mode TEXT,
    readings_count INTEGER DEFAULT 0
);

-- Surplus-over-baseline tracking sessions
CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY,
    start_time TEXT NOT NULL,
    end_time TEXT,
    baseline_watts REAL NOT NULL,
    total_wh REAL DEFAULT 0,
    surplus_wh REAL DEFAULT 0,
    surplus_cost REAL DEFAULT 0,
    label TEXT,
    category TEXT
);

-- Tempo day colors published by the utility
CREATE TABLE IF NOT EXISTS tempo_days (
    date TEXT PRIMARY KEY,
    color TEXT NOT NULL,
    fetched_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_readings_timestamp ON power_readings(timestamp);
CREATE INDEX IF NOT EXISTS idx_sessions_start ON sessions(start_time);
"""


def get_db_path() -> Path:
    """Get the database path, creating parent directories if needed."""
    db_path = Path(os.environ.get("POWERCOST_DB") or DEFAULT_DB_PATH).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path


@contextmanager
def get_connection(db_path: Path | None = None) -> Iterator[sqlite3.Connection]:
    """Get a database connection with row factory enabled."""
    path = db_path or get_db_path()
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def migrate_db(db_path: Path | None = None) -> None:
    """Apply database migrations for existing databases."""
    with get_connection(db_path) as conn:
        tables = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='sessions'"
        ).fetchone()

        if not tables:
            return

        cursor = conn.execute("PRAGMA table_info(sessions)")
        existing_columns = {row["name"] for row in cursor.fetchall()}

        # Older databases predate session categories and labels
        columns_to_add = {
            "label": "TEXT",
            "category": "TEXT",
        }

        for col_name, col_type in columns_to_add.items():
            if col_name not in existing_columns:
                conn.execute(f"ALTER TABLE sessions ADD COLUMN {col_name} {col_type}")

        conn.commit()


def init_db(db_path: Path | None = None) -> None:
    """Initialize the database schema."""
    with get_connection(db_path) as conn:
        conn.executescript(SCHEMA)
        conn.commit()

    migrate_db(db_path)


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="seconds")


def _reading_from_row(row: sqlite3.Row) -> PowerReading:
    return PowerReading(
        timestamp=datetime.fromisoformat(row["timestamp"]),
        power_watts=row["power_watts"],
        source_id=SourceId(row["source"]),
        is_estimated=bool(row["is_estimated"]),
        component_breakdown=json.loads(row["components"]) if row["components"] else None,
    )


def _aggregate_from_row(row: sqlite3.Row) -> DailyAggregate:
    return DailyAggregate(
        date=date.fromisoformat(row["date"]),
        total_wh=row["total_wh"],
        total_cost=row["total_cost"] or 0.0,
        avg_watts=row["avg_watts"] or 0.0,
        max_watts=row["max_watts"] or 0.0,
        pricing_mode=row["pricing_mode"],
        readings_count=row["readings_count"] or 0,
    )


def _session_from_row(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        start_time=datetime.fromisoformat(row["start_time"]),
        end_time=datetime.fromisoformat(row["end_time"]) if row["end_time"] else None,
        baseline_watts=row["baseline_watts"],
        cumulative_wh=row["total_wh"] or 0.0,
        surplus_wh=row["surplus_wh"] or 0.0,
        surplus_cost=row["surplus_cost"] or 0.0,
        label=row["label"],
        category=row["category"],
    )


def insert_reading(reading: PowerReading, db_path: Path | None = None) -> None:
    """Store one resolved power reading."""
    with get_connection(db_path) as conn:
        conn.execute(
            """INSERT INTO power_readings
               (timestamp, power_watts, source, is_estimated, components)
               VALUES (?, ?, ?, ?, ?)""",
            (
                _ts(reading.timestamp),
                reading.power_watts,
                reading.source_id.value,
                int(reading.is_estimated),
                json.dumps(reading.component_breakdown) if reading.component_breakdown else None,
            ),
        )
        conn.commit()


def query_readings(start: datetime, end: datetime, db_path: Path | None = None) -> list[PowerReading]:
    """Readings with start <= timestamp <= end, oldest first."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            """SELECT timestamp, power_watts, source, is_estimated, components
               FROM power_readings
               WHERE timestamp >= ? AND timestamp <= ?
               ORDER BY timestamp""",
            (_ts(start), _ts(end)),
        ).fetchall()

    return [_reading_from_row(row) for row in rows]


def upsert_daily_stats(aggregate: DailyAggregate, db_path: Path | None = None) -> None:
    """Insert or replace the totals for one day."""
    with get_connection(db_path) as conn:
        conn.execute(
            """INSERT INTO daily_stats
               (date, total_wh, total_cost, avg_watts, max_watts, pricing_mode, readings_count)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(date) DO UPDATE SET
                   total_wh = excluded.total_wh,
                   total_cost = excluded.total_cost,
                   avg_watts = excluded.avg_watts,
                   max_watts = excluded.max_watts,
                   pricing_mode = excluded.pricing_mode,
                   readings_count = excluded.readings_count""",
            (
                aggregate.date.isoformat(),
                aggregate.total_wh,
                aggregate.total_cost,
                aggregate.avg_watts,
                aggregate.max_watts,
                aggregate.pricing_mode,
                aggregate.readings_count,
            ),
        )
        conn.commit()


def query_daily_stats(start: date, end: date, db_path: Path | None = None) -> list[DailyAggregate]:
    """Daily totals for start..end inclusive, oldest first."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            """SELECT * FROM daily_stats
               WHERE date >= ? AND date <= ?
               ORDER BY date""",
            (start.isoformat(), end.isoformat()),
        ).fetchall()

    return [_aggregate_from_row(row) for row in rows]


def create_session(session: Session, db_path: Path | None = None) -> int:
    """Insert a new session and return its id."""
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            """INSERT INTO sessions
               (start_time, end_time, baseline_watts, total_wh, surplus_wh, surplus_cost, label, category)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                _ts(session.start_time),
                _ts(session.end_time) if session.end_time else None,
                session.baseline_watts,
                session.cumulative_wh,
                session.surplus_wh,
                session.surplus_cost,
                session.label,
                session.category,
            ),
        )
        conn.commit()
        return cursor.lastrowid


def update_session(session: Session, db_path: Path | None = None) -> None:
    """Write the running figures (and end time, once set) of a session."""
    if session.id is None:
        raise ValueError("Session has not been stored yet")
    with get_connection(db_path) as conn:
        conn.execute(
            """UPDATE sessions
               SET end_time = ?, total_wh = ?, surplus_wh = ?, surplus_cost = ?,
                   label = ?, category = ?
               WHERE id = ?""",
            (
                _ts(session.end_time) if session.end_time else None,
                session.cumulative_wh,
                session.surplus_wh,
                session.surplus_cost,
                session.label,
                session.category,
                session.id,
            ),
        )
        conn.commit()


def close_session(session: Session, db_path: Path | None = None) -> None:
    """Store the final figures of an ended session."""
    if session.end_time is None:
        raise ValueError("Session has no end time")
    update_session(session, db_path)


def get_session(session_id: int, db_path: Path | None = None) -> Session | None:
    with get_connection(db_path) as conn:
        row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    return _session_from_row(row) if row else None


def get_active_session(db_path: Path | None = None) -> Session | None:
    """The most recent session without an end time, if any."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM sessions WHERE end_time IS NULL ORDER BY start_time DESC LIMIT 1"
        ).fetchone()
    return _session_from_row(row) if row else None


def list_sessions(limit: int = 20, db_path: Path | None = None) -> list[Session]:
    """Stored sessions, most recent first."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM sessions ORDER BY start_time DESC LIMIT ?", (limit,)
        ).fetchall()
    return [_session_from_row(row) for row in rows]


def delete_session(session_id: int, db_path: Path | None = None) -> bool:
    """Delete a session. Returns False when no such session exists."""
    with get_connection(db_path) as conn:
        cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        conn.commit()
        return cursor.rowcount > 0


def cleanup_old_readings(days: int, db_path: Path | None = None, now: datetime | None = None) -> int:
    """Delete raw readings older than ``days``. Daily stats and sessions are kept."""
    cutoff = (now or datetime.now()) - timedelta(days=days)
    with get_connection(db_path) as conn:
        cursor = conn.execute("DELETE FROM power_readings WHERE timestamp < ?", (_ts(cutoff),))
        conn.commit()
        deleted = cursor.rowcount

    logger.info("Deleted %d readings older than %s", deleted, cutoff.date())
    return deleted


def get_stats(db_path: Path | None = None) -> dict:
    """Get database statistics."""
    with get_connection(db_path) as conn:
        stats = {}

        row = conn.execute(
            "SELECT COUNT(*) as count, MIN(timestamp) as earliest, MAX(timestamp) as latest FROM power_readings"
        ).fetchone()
        stats["power_readings"] = {
            "count": row["count"],
            "earliest": row["earliest"],
            "latest": row["latest"],
        }

        rows = conn.execute(
            "SELECT source, COUNT(*) as count FROM power_readings GROUP BY source"
        ).fetchall()
        stats["readings_by_source"] = {row["source"]: row["count"] for row in rows}

        row = conn.execute(
            "SELECT COUNT(*) as count, MIN(date) as earliest, MAX(date) as latest FROM daily_stats"
        ).fetchone()
        stats["daily_stats"] = {
            "count": row["count"],
            "earliest": row["earliest"],
            "latest": row["latest"],
        }

        row = conn.execute(
            "SELECT COUNT(*) as count, SUM(end_time IS NULL) as active FROM sessions"
        ).fetchone()
        stats["sessions"] = {"count": row["count"], "active": row["active"] or 0}

        row = conn.execute("SELECT COUNT(*) as count FROM tempo_days").fetchone()
        stats["tempo_days"] = {"count": row["count"]}

        return stats


class SqlitePersistence:
    """The engine's storage collaborator, backed by the functions above.

    Creates the schema on construction. Errors propagate as sqlite3.Error;
    the scheduler and session tracker treat every call as best effort.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or get_db_path()
        init_db(self.db_path)

    def append_reading(self, reading: PowerReading) -> None:
        insert_reading(reading, self.db_path)

    def append_daily_aggregate(self, day: date, totals: DailyAggregate) -> None:
        if totals.date != day:
            raise ValueError(f"Aggregate for {totals.date} passed as {day}")
        upsert_daily_stats(totals, self.db_path)

    def create_session(self, session: Session) -> int:
        return create_session(session, self.db_path)

    def update_session(self, session: Session) -> None:
        update_session(session, self.db_path)

    def close_session(self, session: Session) -> None:
        close_session(session, self.db_path)

    def list_sessions(self, limit: int = 20) -> list[Session]:
        return list_sessions(limit, self.db_path)

    def query_range(self, start: date, end: date) -> list[DailyAggregate]:
        return query_daily_stats(start, end, self.db_path)

    def query_readings(self, start: datetime, end: datetime) -> list[PowerReading]:
        return query_readings(start, end, self.db_path)
