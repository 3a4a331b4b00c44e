from __future__ import annotations

import asyncio

import pytest

from bookkeeper.cloudsync import InMemoryRemoteStore, Reconciler, RecordState, RejectionError, SyncCoordinator

TABLE = "customers"


class SnapshotRemote(InMemoryRemoteStore):
    """Returns the rows as they were when ``select_all`` was called, after a per-call delay."""

    def __init__(self) -> None:
        super().__init__()
        self.select_delays: list[float] = []

    async def select_all(self, table, *, owner, include_deleted=False):
        snapshot = self.list_rows(table, owner=owner, include_deleted=include_deleted)
        delay = self.select_delays.pop(0) if self.select_delays else 0.0
        if delay:
            await asyncio.sleep(delay)
        return snapshot


@pytest.mark.asyncio
async def test_selection_reflects_update_wholesale(coordinator, reconciler, remote) -> None:
    created = await coordinator.create(TABLE, {"name": "A", "phone": "1"})
    selection = reconciler.select(TABLE, created.record.id)
    assert selection.record.get("name") == "A"
    # Another device changed a field without touching the version column.
    remote.rows[(TABLE, created.record.id)]["phone"] = "2"

    await coordinator.update(TABLE, created.record.id, {"name": "B"})

    assert selection.record.get("name") == "B"
    assert selection.record.get("phone") == "2"
    assert selection.record == coordinator.get(TABLE, created.record.id)


@pytest.mark.asyncio
async def test_selection_cleared_after_soft_delete(coordinator, reconciler) -> None:
    created = await coordinator.create(TABLE, {"name": "A"})
    selection = reconciler.select(TABLE, created.record.id)
    seen = []
    selection.subscribe(seen.append)

    await coordinator.soft_delete(TABLE, created.record.id)

    assert selection.record is None
    assert seen == [None]


@pytest.mark.asyncio
async def test_optimistic_mutation_still_reconciles(coordinator, reconciler, remote) -> None:
    created = await coordinator.create(TABLE, {"name": "A"})
    selection = reconciler.select(TABLE, created.record.id)
    remote.online = False

    result = await coordinator.update(TABLE, created.record.id, {"name": "Offline"})

    assert result.is_optimistic
    assert reconciler.reconciliations == 2
    assert selection.record.get("name") == "Offline"


@pytest.mark.asyncio
async def test_rejection_does_not_reconcile(coordinator, reconciler, remote) -> None:
    created = await coordinator.create(TABLE, {"name": "A"})
    before = reconciler.reconciliations
    remote.fail_next(RejectionError("denied", reason="unauthorized", status=403))

    with pytest.raises(RejectionError):
        await coordinator.update(TABLE, created.record.id, {"name": "B"})

    assert reconciler.reconciliations == before
    assert reconciler.generation(TABLE, created.record.id) == 1


@pytest.mark.asyncio
async def test_last_reconciliation_wins(store, auth, config) -> None:
    remote = SnapshotRemote()
    coordinator = SyncCoordinator(remote, store, auth, config=config)
    reconciler = Reconciler(coordinator)
    created = await coordinator.create(TABLE, {"name": "v0"})
    record_id = created.record.id
    selection = reconciler.select(TABLE, record_id)

    remote.rows[(TABLE, record_id)]["name"] = "v1"
    remote.select_delays = [0.05, 0.0]
    first = asyncio.create_task(reconciler.after_mutation(TABLE, record_id))
    await asyncio.sleep(0.01)
    remote.rows[(TABLE, record_id)]["name"] = "v2"
    await reconciler.after_mutation(TABLE, record_id)
    assert selection.record.get("name") == "v2"

    await first
    assert selection.record.get("name") == "v2"
    assert coordinator.get(TABLE, record_id).get("name") == "v2"
    assert reconciler.generation(TABLE, record_id) == 3


@pytest.mark.asyncio
async def test_released_selection_stops_updating(coordinator, reconciler) -> None:
    created = await coordinator.create(TABLE, {"name": "A"})
    selection = reconciler.select(TABLE, created.record.id)
    seen = []
    selection.subscribe(seen.append)

    selection.release()
    await coordinator.update(TABLE, created.record.id, {"name": "B"})

    assert selection.released
    assert selection.record.get("name") == "A"
    assert seen == []


@pytest.mark.asyncio
async def test_refetch_failure_keeps_cache(store, auth, config) -> None:
    remote = InMemoryRemoteStore()
    coordinator = SyncCoordinator(remote, store, auth, config=config)
    reconciler = Reconciler(coordinator)
    remote.online = False

    result = await coordinator.create(TABLE, {"id": "a1"})

    assert result.is_optimistic
    assert reconciler.reconciliations == 1
    assert [record.id for record in coordinator.collection(TABLE)] == ["a1"]


@pytest.mark.asyncio
async def test_selection_cleared_when_retries_run_out(coordinator, reconciler, remote) -> None:
    coordinator.config.max_attempts = 2
    remote.online = False
    await coordinator.create(TABLE, {"id": "a1", "name": "Queued"})
    selection = reconciler.select(TABLE, "a1")
    assert selection.record.state is RecordState.OPTIMISTIC

    for _ in range(2):
        assert await coordinator.flush_queue(force=True) == (0, 1)

    assert coordinator.get(TABLE, "a1") is None
    assert selection.record is None
    assert len(coordinator.exhausted_operations()) == 1
