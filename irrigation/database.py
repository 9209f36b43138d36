"""
Database helpers and schema initialization for the SQLite store.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterable, Tuple
import sqlite3

from .config import settings


def dict_factory(cursor: sqlite3.Cursor, row: Tuple[Any, ...]) -> Dict[str, Any]:
    """
    Convert sqlite rows into dictionaries keyed by column name.
    """
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


@contextmanager
def get_connection() -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager that yields a database connection and guarantees it is closed.
    The path is read on every call so tests can point the store elsewhere.
    """
    conn = sqlite3.connect(settings.database_path, timeout=5.0)
    conn.row_factory = dict_factory
    conn.execute("PRAGMA busy_timeout = 5000;")
    conn.execute("PRAGMA foreign_keys = ON;")
    try:
        yield conn
    finally:
        conn.close()


_SCHEMA_STATEMENTS: Iterable[str] = (
    """
    CREATE TABLE IF NOT EXISTS ZoneStatus (
        ZoneId TEXT PRIMARY KEY,
        DisplayName TEXT NOT NULL,
        ValveState TEXT NOT NULL DEFAULT 'closed' CHECK (ValveState IN ('open', 'closed')),
        Health TEXT NOT NULL DEFAULT 'active' CHECK (Health IN ('active', 'inactive', 'error')),
        LastOpenedAt TEXT,
        Moisture REAL,
        Temperature REAL,
        ReadingAt TEXT,
        UpdatedAt TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS Schedules (
        Id TEXT PRIMARY KEY,
        Name TEXT NOT NULL,
        Description TEXT,
        TimeOfDay TEXT NOT NULL,
        DurationMinutes INTEGER NOT NULL CHECK (DurationMinutes > 0),
        Days TEXT NOT NULL,
        Zones TEXT NOT NULL,
        Enabled INTEGER NOT NULL DEFAULT 1,
        Mode TEXT NOT NULL CHECK (Mode IN ('fixed', 'smart', 'weather')),
        MinMoisture REAL,
        MaxTemperature REAL,
        SkipIfRaining INTEGER,
        CreatedAt TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UpdatedAt TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS EventLog (
        Id INTEGER PRIMARY KEY AUTOINCREMENT,
        CreatedAt TEXT NOT NULL,
        ScheduleId TEXT,
        Mode TEXT NOT NULL CHECK (Mode IN ('fixed', 'smart', 'weather', 'manual', 'auto')),
        Actor TEXT NOT NULL,
        Action TEXT NOT NULL CHECK (Action IN ('RUN', 'OPEN', 'CLOSE')),
        ScheduledTime TEXT NOT NULL,
        DurationMinutes REAL,
        Zones TEXT NOT NULL,
        ZoneResults TEXT NOT NULL DEFAULT '{}',
        Status TEXT NOT NULL CHECK (Status IN ('pending', 'running', 'completed', 'skipped', 'failed')),
        Reason TEXT,
        StartedAt TEXT,
        EndedAt TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_eventlog_schedule_time ON EventLog (ScheduleId, ScheduledTime);",
    "CREATE INDEX IF NOT EXISTS idx_eventlog_status ON EventLog (Status);",
    "CREATE INDEX IF NOT EXISTS idx_eventlog_time ON EventLog (ScheduledTime DESC);",
)


def bootstrap_zone_rows(conn: sqlite3.Connection) -> None:
    """
    Ensure that each configured zone exists exactly once.
    """
    cursor = conn.cursor()
    cursor.execute("SELECT ZoneId FROM ZoneStatus;")
    existing_ids = {row["ZoneId"] for row in cursor.fetchall()}

    rows_to_insert = [
        (zone, settings.zone_name_map.get(zone, zone))
        for zone in settings.zone_ids
        if zone not in existing_ids
    ]

    if rows_to_insert:
        cursor.executemany(
            """
            INSERT INTO ZoneStatus (ZoneId, DisplayName, ValveState, Health)
            VALUES (?, ?, 'closed', 'active');
            """,
            rows_to_insert,
        )
    cursor.close()


def init_db() -> None:
    """
    Create schema (if needed) and populate rows that the engine expects.
    """
    with get_connection() as conn:
        cursor = conn.cursor()

        for statement in _SCHEMA_STATEMENTS:
            cursor.execute(statement)

        bootstrap_zone_rows(conn)
        conn.commit()
        cursor.close()


if __name__ == "__main__":
    init_db()
    print(f"SQLite database initialized at {settings.database_path}")
