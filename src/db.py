"""Shared SQLite helpers: WAL mode, busy timeout, commit-or-rollback sessions."""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

# Seconds a writer waits on another connection's lock before raising "database is locked"
BUSY_TIMEOUT = 5.0


def wal_connect(
    db_path: str | Path, row_factory: bool = False, timeout: float = BUSY_TIMEOUT
) -> sqlite3.Connection:
    """Open SQLite connection with WAL journal mode.

    Args:
        db_path: Path to database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        timeout: Busy timeout in seconds for lock contention between writers.
    """
    conn = sqlite3.connect(str(db_path), timeout=timeout)
    conn.execute("PRAGMA journal_mode=WAL")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def wal_session(db_path: str | Path, row_factory: bool = False) -> Iterator[sqlite3.Connection]:
    """WAL connection that commits on success, rolls back on error, and always closes."""
    conn = wal_connect(db_path, row_factory=row_factory)
    try:
        with conn:
            yield conn
    finally:
        conn.close()
