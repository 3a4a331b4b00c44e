from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from .records import OperationStatus, PendingOperation, encode_ndjson, format_ts, utcnow


class LocalSyncStore:
    """SQLite-backed durable queue and key/value state for the sync client."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._is_memory = str(path) == ":memory:"
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._is_memory:
            if self._shared_conn is None:
                self._shared_conn = sqlite3.connect(":memory:")
                self._shared_conn.row_factory = sqlite3.Row
            yield self._shared_conn
        else:
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS pending_operations (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id TEXT NOT NULL UNIQUE,
                    table_name TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    enqueued_at TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at TEXT,
                    last_error TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    owner TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_pending_table_record
                    ON pending_operations(table_name, record_id);

                CREATE TABLE IF NOT EXISTS local_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._ensure_owner_column(conn)
            conn.commit()

    def _ensure_owner_column(self, conn: sqlite3.Connection) -> None:
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(pending_operations)").fetchall()}
        if "owner" not in columns:
            conn.execute("ALTER TABLE pending_operations ADD COLUMN owner TEXT")

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None

    # ------------------------------------------------------------------
    def enqueue(self, operation: PendingOperation) -> PendingOperation:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO pending_operations(
                    entry_id, table_name, record_id, kind, payload, enqueued_at,
                    attempts, next_attempt_at, last_error, status, owner
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    operation.entry_id,
                    operation.table,
                    operation.record_id,
                    operation.kind.value,
                    json.dumps(operation.payload, separators=(",", ":"), default=str),
                    format_ts(operation.enqueued_at),
                    operation.attempts,
                    format_ts(operation.next_attempt_at),
                    operation.last_error,
                    operation.status.value,
                    operation.owner,
                ),
            )
            conn.commit()
        return operation

    def list_operations(
        self,
        *,
        table: str | None = None,
        status: OperationStatus | None = OperationStatus.PENDING,
    ) -> list[PendingOperation]:
        """Return queued operations in enqueue order."""

        query = "SELECT * FROM pending_operations"
        clauses: list[str] = []
        params: list[Any] = []
        if table:
            clauses.append("table_name = ?")
            params.append(table)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY seq ASC"
        with self._connection() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_operation(row) for row in rows]

    def get_operation(self, entry_id: str) -> PendingOperation | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM pending_operations WHERE entry_id = ?", (entry_id,)).fetchone()
        return self._row_to_operation(row) if row else None

    def pending_tables(self) -> list[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT table_name, MIN(seq) AS first_seq FROM pending_operations "
                "WHERE status = ? GROUP BY table_name ORDER BY first_seq ASC",
                (OperationStatus.PENDING.value,),
            ).fetchall()
        return [row["table_name"] for row in rows]

    def has_pending(self, table: str, record_id: str) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM pending_operations WHERE table_name = ? AND record_id = ? AND status = ? LIMIT 1",
                (table, record_id, OperationStatus.PENDING.value),
            ).fetchone()
        return row is not None

    def pending_record_ids(self, table: str) -> set[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT record_id FROM pending_operations WHERE table_name = ? AND status = ?",
                (table, OperationStatus.PENDING.value),
            ).fetchall()
        return {row["record_id"] for row in rows}

    def mark_attempt(self, entry_id: str, *, error: str, next_attempt_at: datetime | None) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE pending_operations
                   SET attempts = attempts + 1, last_error = ?, next_attempt_at = ?
                 WHERE entry_id = ?
                """,
                (error, format_ts(next_attempt_at), entry_id),
            )
            conn.commit()

    def mark_exhausted(self, entry_id: str, *, error: str) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE pending_operations
                   SET attempts = attempts + 1, last_error = ?, status = ?, next_attempt_at = NULL
                 WHERE entry_id = ?
                """,
                (error, OperationStatus.EXHAUSTED.value, entry_id),
            )
            conn.commit()

    def remove(self, entry_ids: Iterable[str]) -> None:
        with self._connection() as conn:
            conn.executemany(
                "DELETE FROM pending_operations WHERE entry_id = ?",
                ((entry_id,) for entry_id in entry_ids),
            )
            conn.commit()

    def clear(self, *, status: OperationStatus | None = None) -> int:
        query = "DELETE FROM pending_operations"
        params: tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        with self._connection() as conn:
            cursor = conn.execute(query, params)
            conn.commit()
        return int(cursor.rowcount or 0)

    def pending_count(self) -> int:
        return self._count(OperationStatus.PENDING)

    def exhausted_count(self) -> int:
        return self._count(OperationStatus.EXHAUSTED)

    def export_ndjson(self) -> str:
        return encode_ndjson(self.list_operations(status=None))

    # ------------------------------------------------------------------
    def get_state(self, key: str) -> Any:
        with self._connection() as conn:
            row = conn.execute("SELECT value FROM local_state WHERE key = ?", (key,)).fetchone()
        if not row:
            return None
        return json.loads(row["value"])

    def set_state(self, key: str, value: Any) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO local_state(key, value, updated_at) VALUES(?, ?, ?)",
                (key, json.dumps(value, separators=(",", ":"), default=str), format_ts(utcnow())),
            )
            conn.commit()

    def delete_state(self, key: str) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM local_state WHERE key = ?", (key,))
            conn.commit()

    # ------------------------------------------------------------------
    def _count(self, status: OperationStatus) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM pending_operations WHERE status = ?",
                (status.value,),
            ).fetchone()
        if not row:
            return 0
        total = row["total"]
        return int(total) if total is not None else 0

    def _row_to_operation(self, row: sqlite3.Row) -> PendingOperation:
        return PendingOperation.from_dict(
            {
                "entry_id": row["entry_id"],
                "table": row["table_name"],
                "record_id": row["record_id"],
                "kind": row["kind"],
                "payload": json.loads(row["payload"]),
                "enqueued_at": row["enqueued_at"],
                "attempts": row["attempts"],
                "next_attempt_at": row["next_attempt_at"],
                "last_error": row["last_error"],
                "status": row["status"],
                "owner": row["owner"],
            }
        )


__all__ = ["LocalSyncStore"]
