"""Per-retriever run health, persisted next to the snapshots."""

from pathlib import Path
from typing import Optional

import structlog

from db import wal_session
from shared_types import RunStatus

logger = structlog.get_logger().bind(source="retriever_health")

# Consecutive failures at which a retriever counts as failing rather than degraded
FAILING_THRESHOLD = 3
MAX_ERROR_CHARS = 500

_RETRIEVER_HEALTH_DDL = """
CREATE TABLE IF NOT EXISTS retriever_health (
    fact_source_id TEXT PRIMARY KEY,
    last_status TEXT NOT NULL,
    last_run_at TEXT NOT NULL,
    last_success_at TEXT,
    last_failure_at TEXT,
    consecutive_errors INTEGER NOT NULL DEFAULT 0,
    total_runs INTEGER NOT NULL DEFAULT 0,
    total_errors INTEGER NOT NULL DEFAULT 0,
    total_inserted INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    last_inserted INTEGER NOT NULL DEFAULT 0,
    last_duplicates INTEGER NOT NULL DEFAULT 0,
    last_pruned INTEGER NOT NULL DEFAULT 0,
    last_violations INTEGER NOT NULL DEFAULT 0,
    last_duration_seconds REAL
)
"""

# Single upsert for successful and failed runs
_RECORD_SQL = """
INSERT INTO retriever_health (
    fact_source_id, last_status, last_run_at, last_success_at, last_failure_at,
    consecutive_errors, total_runs, total_errors, total_inserted, last_error,
    last_inserted, last_duplicates, last_pruned, last_violations, last_duration_seconds)
VALUES (:id, :status, :run_at, :success_at, :failure_at,
    :failed, 1, :failed, :inserted, :error,
    :inserted, :duplicates, :pruned, :violations, :duration)
ON CONFLICT(fact_source_id) DO UPDATE SET
    last_status = excluded.last_status,
    last_run_at = excluded.last_run_at,
    last_success_at = COALESCE(excluded.last_success_at, last_success_at),
    last_failure_at = COALESCE(excluded.last_failure_at, last_failure_at),
    consecutive_errors = CASE WHEN excluded.total_errors = 0 THEN 0
                              ELSE consecutive_errors + 1 END,
    total_runs = total_runs + 1,
    total_errors = total_errors + excluded.total_errors,
    total_inserted = total_inserted + excluded.total_inserted,
    last_error = excluded.last_error,
    last_inserted = excluded.last_inserted,
    last_duplicates = excluded.last_duplicates,
    last_pruned = excluded.last_pruned,
    last_violations = excluded.last_violations,
    last_duration_seconds = excluded.last_duration_seconds
RETURNING consecutive_errors
"""


def classify(consecutive_errors: int) -> str:
    if consecutive_errors >= FAILING_THRESHOLD:
        return "failing"
    if consecutive_errors:
        return "degraded"
    return "healthy"


class RetrieverHealthTracker:
    """Run outcomes per fact source.

    Purely observational: a failing retriever keeps firing on its cadence.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with wal_session(self.db_path) as conn:
            conn.execute(_RETRIEVER_HEALTH_DDL)

    def record(self, report) -> int:
        """Fold a finished ``RunReport`` into the source's row. Returns the failure streak."""
        if report.status is RunStatus.SKIPPED:
            return 0
        failed = not report.ok
        run_at = (report.finished_at or report.started_at).isoformat()
        params = {
            "id": report.fact_source_id,
            "status": report.status.value,
            "run_at": run_at,
            "success_at": None if failed else run_at,
            "failure_at": run_at if failed else None,
            "failed": int(failed),
            "inserted": report.inserted,
            "error": (report.error or "unknown error")[:MAX_ERROR_CHARS] if failed else None,
            "duplicates": report.duplicates,
            "pruned": report.pruned,
            "violations": len(report.violations),
            "duration": report.duration_s,
        }
        with wal_session(self.db_path) as conn:
            (streak,) = conn.execute(_RECORD_SQL, params).fetchone()

        if streak == FAILING_THRESHOLD:
            logger.warning(
                "retriever_failing",
                fact_source_id=report.fact_source_id,
                consecutive_errors=streak,
                error=params["error"],
            )
        elif not failed and report.violations:
            logger.info(
                "retriever_succeeded_with_violations",
                fact_source_id=report.fact_source_id,
                violations=len(report.violations),
            )
        return streak

    def get_source_health(self, fact_source_id: str) -> Optional[dict]:
        with wal_session(self.db_path, row_factory=True) as conn:
            row = conn.execute(
                "SELECT * FROM retriever_health WHERE fact_source_id = ?", (fact_source_id,)
            ).fetchone()
        return dict(row) if row else None

    def get_all_health(self) -> list[dict]:
        with wal_session(self.db_path, row_factory=True) as conn:
            rows = conn.execute("SELECT * FROM retriever_health ORDER BY fact_source_id").fetchall()
        return [dict(r) for r in rows]

    def get_health_summary(self) -> list[dict]:
        """All rows plus a derived ``status`` and ``error_rate`` (percent of runs failed)."""
        rows = self.get_all_health()
        for r in rows:
            r["status"] = classify(r["consecutive_errors"])
            r["error_rate"] = round(r["total_errors"] / r["total_runs"] * 100, 1) if r["total_runs"] else 0.0
        return rows
