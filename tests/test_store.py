from __future__ import annotations

import sqlite3
from datetime import timedelta
from pathlib import Path

from bookkeeper.cloudsync import (
    LocalSyncStore,
    OperationKind,
    OperationStatus,
    PendingOperation,
    decode_ndjson,
)
from bookkeeper.cloudsync.records import utcnow


def make_op(entry_id: str, record_id: str, *, table: str = "customers", kind=OperationKind.CREATE) -> PendingOperation:
    return PendingOperation(
        entry_id=entry_id,
        table=table,
        record_id=record_id,
        kind=kind,
        payload={"id": record_id, "name": "Asha"},
        enqueued_at=utcnow(),
    )


def test_queue_preserves_enqueue_order(store: LocalSyncStore) -> None:
    store.enqueue(make_op("e2", "b"))
    store.enqueue(make_op("e1", "a"))
    store.enqueue(make_op("e3", "c", table="suppliers"))

    assert [op.entry_id for op in store.list_operations(table="customers")] == ["e2", "e1"]
    assert store.pending_tables() == ["customers", "suppliers"]
    assert store.pending_record_ids("customers") == {"a", "b"}
    assert store.has_pending("customers", "a")
    assert not store.has_pending("suppliers", "a")


def test_queue_survives_restart(tmp_path: Path) -> None:
    path = tmp_path / "queue.db"
    first = LocalSyncStore(path)
    first.enqueue(make_op("e1", "a1"))
    first.close()

    reopened = LocalSyncStore(path)
    operations = reopened.list_operations()
    assert len(operations) == 1
    assert operations[0].record_id == "a1"
    assert operations[0].payload["name"] == "Asha"
    assert operations[0].kind is OperationKind.CREATE


def test_attempts_and_exhaustion(store: LocalSyncStore) -> None:
    store.enqueue(make_op("e1", "a"))
    store.enqueue(make_op("e2", "b"))
    retry_at = utcnow() + timedelta(seconds=30)

    store.mark_attempt("e1", error="timeout", next_attempt_at=retry_at)
    operation = store.get_operation("e1")
    assert operation.attempts == 1
    assert operation.last_error == "timeout"
    assert not operation.is_due(utcnow())

    store.mark_exhausted("e2", error="rejected")
    assert store.pending_count() == 1
    assert store.exhausted_count() == 1
    exhausted = store.list_operations(status=OperationStatus.EXHAUSTED)
    assert [op.entry_id for op in exhausted] == ["e2"]
    assert not store.has_pending("customers", "b")


def test_remove_and_clear(store: LocalSyncStore) -> None:
    for index in range(3):
        store.enqueue(make_op(f"e{index}", f"r{index}"))
    store.mark_exhausted("e2", error="boom")

    store.remove(["e0"])
    assert store.pending_count() == 1
    assert store.clear(status=OperationStatus.EXHAUSTED) == 1
    assert store.clear() == 1
    assert store.list_operations(status=None) == []


def test_export_ndjson(store: LocalSyncStore) -> None:
    store.enqueue(make_op("e1", "a"))
    store.enqueue(make_op("e2", "a", kind=OperationKind.UPDATE))

    decoded = decode_ndjson(store.export_ndjson())
    assert [(op.entry_id, op.kind) for op in decoded] == [("e1", OperationKind.CREATE), ("e2", OperationKind.UPDATE)]


def test_state_roundtrip() -> None:
    store = LocalSyncStore(":memory:")
    assert store.get_state("session") is None
    store.set_state("session", {"user_id": "u1"})
    assert store.get_state("session") == {"user_id": "u1"}
    store.delete_state("session")
    assert store.get_state("session") is None
    store.close()


def test_owner_survives_restart_and_legacy_queues(tmp_path: Path) -> None:
    path = tmp_path / "legacy.db"
    conn = sqlite3.connect(path)
    conn.execute(
        """
        CREATE TABLE pending_operations (
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
            status TEXT NOT NULL DEFAULT 'pending'
        )
        """
    )
    conn.execute(
        "INSERT INTO pending_operations(entry_id, table_name, record_id, kind, payload, enqueued_at) "
        "VALUES('old', 'customers', 'a1', 'create', '{\"id\":\"a1\",\"user_id\":\"u1\"}', '2025-01-01T00:00:00Z')"
    )
    conn.commit()
    conn.close()

    store = LocalSyncStore(path)
    operation = make_op("new", "b1")
    operation.owner = "u2"
    store.enqueue(operation)

    owners = {op.entry_id: op.owner for op in store.list_operations()}
    assert owners == {"old": "u1", "new": "u2"}
    store.close()
