"""SQLite fact snapshot storage."""

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import structlog

from cli.retry import storage_retry
from db import wal_session
from shared_types import FactType

from .errors import SchemaVersionConflictError, StorageError
from .models import DateRange, EntityRef, FactSchema, FactSnapshot, to_utc

logger = structlog.get_logger().bind(source="fact_store")

KEY_LOCK_STRIPES = 64

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

_KEY_WHERE = """
    fact_source_id = ? AND entity_namespace = ? AND entity_kind = ? AND entity_name = ?
"""


def format_timestamp(dt: datetime) -> str:
    """Fixed-width UTC text so lexical order equals chronological order."""
    return to_utc(dt).strftime(_TS_FORMAT)


def parse_timestamp(raw: str) -> datetime:
    return datetime.strptime(raw, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _infer_type(value: Any) -> FactType:
    if isinstance(value, bool):
        return FactType.BOOLEAN
    if isinstance(value, int):
        return FactType.INTEGER
    if isinstance(value, float):
        return FactType.FLOAT
    if isinstance(value, str):
        return FactType.STRING
    if isinstance(value, (set, frozenset)):
        return FactType.SET
    if isinstance(value, datetime):
        return FactType.DATETIME
    raise StorageError(f"Cannot store fact value of type {type(value).__name__}")


def encode_values(values: dict[str, Any]) -> str:
    """Tagged-union JSON blob: ``{"name": {"type": "...", "value": ...}}``."""
    tagged = {}
    for name, value in values.items():
        fact_type = _infer_type(value)
        tagged[name] = {"type": fact_type.value, "value": fact_type.to_json(value)}
    return json.dumps(tagged, sort_keys=True)


def decode_values(blob: str) -> dict[str, Any]:
    return {
        name: FactType(tagged["type"]).from_json(tagged["value"])
        for name, tagged in json.loads(blob).items()
    }


def _key_params(fact_source_id: str, entity: EntityRef) -> tuple:
    return (fact_source_id, entity.namespace, entity.kind, entity.name)


class FactStore:
    """Append-only SQLite storage for fact snapshots.

    Each call opens its own WAL connection, so readers never wait on writers.
    Writers for the same (fact source, entity) key are serialized through
    ``key_lock``, which hashes each key onto a fixed set of lock stripes.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._locks = [threading.Lock() for _ in range(KEY_LOCK_STRIPES)]
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        with wal_session(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS fact_snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    fact_source_id TEXT NOT NULL,
                    entity_namespace TEXT NOT NULL,
                    entity_kind TEXT NOT NULL,
                    entity_name TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    fact_values TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (fact_source_id, entity_namespace, entity_kind, entity_name, timestamp)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_snapshots_key_ts ON fact_snapshots(
                    fact_source_id, entity_namespace, entity_kind, entity_name, timestamp
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_snapshots_entity ON fact_snapshots(
                    entity_namespace, entity_kind, entity_name
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS fact_schemas (
                    id TEXT NOT NULL,
                    version TEXT NOT NULL,
                    schema TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (id, version)
                )
            """)

    @contextmanager
    def key_lock(self, fact_source_id: str, entity: EntityRef) -> Iterator[None]:
        """Serialize writers (insert + prune) for one key within this process."""
        key = _key_params(fact_source_id, entity)
        with self._locks[hash(key) % KEY_LOCK_STRIPES]:
            yield

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> FactSnapshot:
        return FactSnapshot(
            fact_source_id=row["fact_source_id"],
            entity=EntityRef(
                kind=row["entity_kind"],
                name=row["entity_name"],
                namespace=row["entity_namespace"],
            ),
            timestamp=parse_timestamp(row["timestamp"]),
            values=decode_values(row["fact_values"]),
        )

    # --- writes ---

    def insert(self, snapshot: FactSnapshot) -> Optional[int]:
        """Append a snapshot.

        Returns:
            Row ID of the new row, or None if the key already existed (idempotent retry).
            A different payload under an existing key is logged and ignored: the first
            write stands.
        """
        blob = encode_values(dict(snapshot.values))
        ts = format_timestamp(snapshot.timestamp)
        params = _key_params(snapshot.fact_source_id, snapshot.entity)
        try:
            row_id, existing = self._insert_row(params, ts, blob)
        except sqlite3.Error as e:
            logger.error(
                "snapshot_insert_failed",
                fact_source_id=snapshot.fact_source_id,
                entity=str(snapshot.entity),
                error=str(e),
            )
            raise StorageError(f"Insert failed for {snapshot.fact_source_id}/{snapshot.entity}: {e}") from e

        if row_id is None and existing is not None and existing != blob:
            logger.warning(
                "snapshot_conflict",
                fact_source_id=snapshot.fact_source_id,
                entity=str(snapshot.entity),
                timestamp=ts,
            )
        return row_id

    @storage_retry()
    def _insert_row(self, params: tuple, ts: str, blob: str) -> tuple[Optional[int], Optional[str]]:
        with wal_session(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO fact_snapshots
                (fact_source_id, entity_namespace, entity_kind, entity_name, timestamp, fact_values)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (*params, ts, blob),
            )
            if cursor.rowcount > 0:
                return cursor.lastrowid, None
            row = conn.execute(
                f"SELECT fact_values FROM fact_snapshots WHERE {_KEY_WHERE} AND timestamp = ?",
                (*params, ts),
            ).fetchone()
            return None, row[0] if row else None

    def delete_ids(self, ids: list[int]) -> int:
        """Delete rows by ID in one transaction. Returns number deleted."""
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        try:
            with wal_session(self.db_path) as conn:
                cursor = conn.execute(
                    f"DELETE FROM fact_snapshots WHERE id IN ({placeholders})", list(ids)
                )
                return cursor.rowcount
        except sqlite3.Error as e:
            raise StorageError(f"Delete failed: {e}") from e

    # --- reads ---

    def _query(self, sql: str, params: tuple) -> list[sqlite3.Row]:
        try:
            with wal_session(self.db_path, row_factory=True) as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Query failed: {e}") from e

    def query_latest(self, fact_source_id: str, entity: EntityRef) -> Optional[FactSnapshot]:
        """Most recent snapshot for the key, or None."""
        rows = self._query(
            f"""
            SELECT * FROM fact_snapshots
            WHERE {_KEY_WHERE}
            ORDER BY timestamp DESC, id DESC
            LIMIT 1
        """,
            _key_params(fact_source_id, entity),
        )
        return self._row_to_snapshot(rows[0]) if rows else None

    def query_latest_for_entity(
        self, entity: EntityRef, fact_source_ids: Optional[list[str]] = None
    ) -> dict[str, FactSnapshot]:
        """Latest snapshot per fact source for one entity."""
        rows = self._query(
            """
            SELECT s.* FROM fact_snapshots s
            WHERE s.entity_namespace = ? AND s.entity_kind = ? AND s.entity_name = ?
              AND s.id = (
                SELECT s2.id FROM fact_snapshots s2
                WHERE s2.fact_source_id = s.fact_source_id
                  AND s2.entity_namespace = s.entity_namespace
                  AND s2.entity_kind = s.entity_kind
                  AND s2.entity_name = s.entity_name
                ORDER BY s2.timestamp DESC, s2.id DESC
                LIMIT 1
              )
            ORDER BY s.fact_source_id
        """,
            (entity.namespace, entity.kind, entity.name),
        )
        latest = {row["fact_source_id"]: self._row_to_snapshot(row) for row in rows}
        if fact_source_ids is not None:
            wanted = set(fact_source_ids)
            latest = {k: v for k, v in latest.items() if k in wanted}
        return latest

    def query_history(
        self,
        fact_source_id: str,
        entity: EntityRef,
        date_range: Optional[DateRange] = None,
        limit: Optional[int] = None,
    ) -> list[FactSnapshot]:
        """Snapshots for the key within an inclusive range, newest first."""
        sql = f"SELECT * FROM fact_snapshots WHERE {_KEY_WHERE}"
        params: list = list(_key_params(fact_source_id, entity))
        if date_range and date_range.start:
            sql += " AND timestamp >= ?"
            params.append(format_timestamp(date_range.start))
        if date_range and date_range.end:
            sql += " AND timestamp <= ?"
            params.append(format_timestamp(date_range.end))
        sql += " ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_snapshot(row) for row in self._query(sql, tuple(params))]

    def count(self, fact_source_id: str, entity: EntityRef) -> int:
        rows = self._query(
            f"SELECT COUNT(*) AS n FROM fact_snapshots WHERE {_KEY_WHERE}",
            _key_params(fact_source_id, entity),
        )
        return rows[0]["n"]

    def keys(self, fact_source_id: str) -> list[EntityRef]:
        """Entities that have at least one snapshot from this fact source."""
        rows = self._query(
            """
            SELECT DISTINCT entity_namespace, entity_kind, entity_name
            FROM fact_snapshots WHERE fact_source_id = ?
            ORDER BY entity_kind, entity_namespace, entity_name
        """,
            (fact_source_id,),
        )
        return [
            EntityRef(kind=r["entity_kind"], name=r["entity_name"], namespace=r["entity_namespace"])
            for r in rows
        ]

    def ids_beyond(self, fact_source_id: str, entity: EntityRef, keep: int) -> list[int]:
        """IDs of every row past the ``keep`` newest (timestamp, then insertion order)."""
        rows = self._query(
            f"""
            SELECT id FROM fact_snapshots
            WHERE {_KEY_WHERE}
            ORDER BY timestamp DESC, id DESC
            LIMIT -1 OFFSET ?
        """,
            (*_key_params(fact_source_id, entity), keep),
        )
        return [r["id"] for r in rows]

    def ids_older_than(
        self,
        fact_source_id: str,
        entity: EntityRef,
        cutoff: datetime,
        exclude_id: Optional[int] = None,
    ) -> list[int]:
        """IDs of rows with timestamp strictly before ``cutoff``."""
        rows = self._query(
            f"""
            SELECT id FROM fact_snapshots
            WHERE {_KEY_WHERE} AND timestamp < ? AND id != ?
            ORDER BY timestamp ASC, id ASC
        """,
            (*_key_params(fact_source_id, entity), format_timestamp(cutoff), exclude_id or -1),
        )
        return [r["id"] for r in rows]

    # --- schemas ---

    def save_schema(self, fact_source_id: str, version: str, schema: FactSchema) -> None:
        """Persist a retriever's schema under its version.

        Raises:
            SchemaVersionConflictError: same version already stored with a different schema.
        """
        blob = json.dumps(schema.to_dict(), sort_keys=True)
        try:
            with wal_session(self.db_path) as conn:
                row = conn.execute(
                    "SELECT schema FROM fact_schemas WHERE id = ? AND version = ?",
                    (fact_source_id, version),
                ).fetchone()
                if row is None:
                    conn.execute(
                        "INSERT INTO fact_schemas (id, version, schema) VALUES (?, ?, ?)",
                        (fact_source_id, version, blob),
                    )
                    logger.info("schema_registered", fact_source_id=fact_source_id, version=version)
                    return
        except sqlite3.Error as e:
            raise StorageError(f"Schema save failed for {fact_source_id}: {e}") from e

        if row[0] != blob:
            raise SchemaVersionConflictError(
                f"Schema for {fact_source_id!r} changed without a version bump (still {version})"
            )

    def latest_schemas(self) -> dict[str, dict]:
        """Most recently registered schema per fact source."""
        rows = self._query(
            """
            SELECT id, version, schema FROM fact_schemas
            WHERE rowid IN (SELECT MAX(rowid) FROM fact_schemas GROUP BY id)
            ORDER BY id
        """,
            (),
        )
        return {
            r["id"]: {"version": r["version"], "schema": FactSchema.from_dict(json.loads(r["schema"]))}
            for r in rows
        }
