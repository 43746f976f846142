"""Cross-instance single-runner designation for retriever runs."""

import os
import socket
import sqlite3
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import structlog

from db import wal_connect, wal_session

from .errors import CoordinationDeniedError, StorageError

logger = structlog.get_logger().bind(source="coordination")

_LEASE_DDL = """
CREATE TABLE IF NOT EXISTS retriever_leases (
    registration_id TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    acquired_at TIMESTAMP NOT NULL,
    expires_at TIMESTAMP NOT NULL
)
"""


def default_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


class RunCoordinator(ABC):
    """Decides whether this instance may run a registration right now."""

    @abstractmethod
    def acquire(self, registration_id: str, lease: timedelta) -> None:
        """Claim the right to run.

        Raises:
            CoordinationDeniedError: another instance holds it, or this one is not a runner.
        """
        pass

    @abstractmethod
    def release(self, registration_id: str) -> None:
        pass


class StaticCoordinator(RunCoordinator):
    """Static main-instance designation from configuration."""

    def __init__(self, is_main_instance: bool = True):
        self.is_main_instance = is_main_instance

    def acquire(self, registration_id: str, lease: timedelta) -> None:
        if not self.is_main_instance:
            raise CoordinationDeniedError(
                f"{registration_id}: this instance is not the designated runner"
            )

    def release(self, registration_id: str) -> None:
        pass


class SqliteLeaseCoordinator(RunCoordinator):
    """Lease per registration in a shared SQLite database.

    A lease is taken inside ``BEGIN IMMEDIATE`` so two instances cannot both see it
    free. Expired leases (holder crashed or overran) may be taken over.
    """

    def __init__(self, db_path: str | Path, instance_id: Optional[str] = None):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.instance_id = instance_id or default_instance_id()
        with wal_session(self.db_path) as conn:
            conn.execute(_LEASE_DDL)

    def acquire(self, registration_id: str, lease: timedelta) -> None:
        now = datetime.now(timezone.utc)
        conn = wal_connect(self.db_path)
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT holder, expires_at FROM retriever_leases WHERE registration_id = ?",
                (registration_id,),
            ).fetchone()
            if row and row[0] != self.instance_id and row[1] > now.isoformat():
                conn.execute("ROLLBACK")
                raise CoordinationDeniedError(
                    f"{registration_id}: lease held by {row[0]} until {row[1]}"
                )
            conn.execute(
                """
                INSERT INTO retriever_leases (registration_id, holder, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(registration_id) DO UPDATE SET
                    holder = excluded.holder,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at
                """,
                (registration_id, self.instance_id, now.isoformat(), (now + lease).isoformat()),
            )
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StorageError(f"Lease acquisition failed for {registration_id}: {e}") from e
        finally:
            conn.close()
        logger.debug("lease_acquired", registration_id=registration_id, holder=self.instance_id)

    def release(self, registration_id: str) -> None:
        with wal_session(self.db_path) as conn:
            conn.execute(
                "DELETE FROM retriever_leases WHERE registration_id = ? AND holder = ?",
                (registration_id, self.instance_id),
            )

    def holder(self, registration_id: str) -> Optional[str]:
        """Current unexpired lease holder, if any."""
        now = datetime.now(timezone.utc).isoformat()
        with wal_session(self.db_path) as conn:
            row = conn.execute(
                "SELECT holder FROM retriever_leases WHERE registration_id = ? AND expires_at > ?",
                (registration_id, now),
            ).fetchone()
        return row[0] if row else None
