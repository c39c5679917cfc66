"""
Database connection management.

Provides SQLite connections for quota, subscription and audit persistence.
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Seconds a writer waits for another connection's write lock
BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str = "ai_gateway.db") -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Transactions are controlled explicitly by callers (isolation_level=None)
    so quota updates can take the write lock up front with BEGIN IMMEDIATE.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(
        str(path),
        timeout=BUSY_TIMEOUT_SECONDS,
        isolation_level=None,
        check_same_thread=False
    )
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a sortable UTC ISO string.

    Naive datetimes are taken to be UTC. Microseconds are always written so
    stored values compare correctly as text.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a timestamp written by to_db_timestamp."""
    if value is None:
        return None
    return datetime.fromisoformat(value)
