"""Optimistic create/update/delete against the remote store with an offline queue."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterable, Mapping
from contextlib import suppress
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol, TypeVar

from ..const import FIELD_DELETED_AT, FIELD_ID, FIELD_UPDATED_AT, RESERVED_FIELDS
from ..utils.log_utils import log_limited
from .conflict import ConflictResolution, ConflictResolver
from .errors import (
    ConflictError,
    ConnectivityError,
    IdentityCollisionError,
    QueueExhaustedError,
    RejectionError,
    SyncError,
    classify_exception,
)
from .events import AuthEvent, Listener, ListenerSet, SignedIn, Subscription, TokenRefreshed
from .ids import IdGenerator, generate_id
from .options import SyncConfig
from .records import (
    OperationKind,
    OperationStatus,
    PendingOperation,
    Record,
    RecordState,
    format_ts,
    parse_ts,
    utcnow,
)
from .remote import RemoteStore
from .store import LocalSyncStore

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .reconcile import Reconciler

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class SessionSource(Protocol):
    @property
    def user_id(self) -> str | None: ...


@dataclass(frozen=True, slots=True)
class MutationResult:
    """Outcome of a coordinator write."""

    record: Record
    is_optimistic: bool
    conflict: ConflictResolution | None = None


class FlushResult(NamedTuple):
    succeeded: int
    failed: int


@dataclass(frozen=True, slots=True)
class SyncStatus:
    is_online: bool = True
    is_connected: bool = False
    pending_operations: int = 0
    exhausted_operations: int = 0
    last_sync: datetime | None = None
    error: str | None = None
    conflicts_resolved: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_sync"] = format_ts(self.last_sync)
        return payload


class SyncCoordinator:
    """Single writer for record ids, owners, the collection cache and the queue."""

    def __init__(
        self,
        remote: RemoteStore,
        store: LocalSyncStore,
        auth: SessionSource,
        *,
        config: SyncConfig | None = None,
        id_generator: IdGenerator | None = None,
        conflict_resolver: ConflictResolver | None = None,
    ) -> None:
        self.remote = remote
        self.store = store
        self.auth = auth
        self.config = config or SyncConfig()
        self.ids = id_generator or IdGenerator()
        self.conflicts = conflict_resolver or ConflictResolver()
        self.reconciler: Reconciler | None = None
        self._collections: dict[str, dict[str, Record]] = {}
        self._drafts: dict[tuple[str, str], Record] = {}
        self._confirmed_versions: dict[tuple[str, str], str | None] = {}
        self._mutation_seq = 0
        self._local_seq: dict[tuple[str, str], int] = {}
        self._refresh_generation: dict[str, int] = {}
        self._table_locks: dict[str, asyncio.Lock] = {}
        self._status = SyncStatus(
            pending_operations=store.pending_count(),
            exhausted_operations=store.exhausted_count(),
        )
        self._status_listeners: ListenerSet[SyncStatus] = ListenerSet("sync status")
        self.last_exhausted: list[QueueExhaustedError] = []
        self._task: asyncio.Task[None] | None = None
        self._consecutive_failures = 0
        self._auth_subscription: Subscription | None = None
        self._cache_owner: str | None = auth.user_id

    def attach_reconciler(self, reconciler: Reconciler) -> None:
        self.reconciler = reconciler

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def collection(self, table: str) -> list[Record]:
        """Live records of ``table``, newest first. Soft-deleted rows are excluded."""

        records = [
            record
            for record in self._collections.get(table, {}).values()
            if not record.is_deleted and record.state is not RecordState.REJECTED
        ]
        records.sort(key=lambda record: (record.created_at or record.updated_at or utcnow()), reverse=True)
        return records

    def get(self, table: str, record_id: str, *, include_deleted: bool = False) -> Record | None:
        record = self._collections.get(table, {}).get(record_id)
        if record is None or record.state is RecordState.REJECTED:
            return None
        if record.is_deleted and not include_deleted:
            return None
        return record

    def status(self) -> SyncStatus:
        return self._status

    def pending_count(self) -> int:
        return self.store.pending_count()

    def pending_operations(self, table: str | None = None) -> list[PendingOperation]:
        return self.store.list_operations(table=table)

    def exhausted_operations(self) -> list[PendingOperation]:
        return self.store.list_operations(status=OperationStatus.EXHAUSTED)

    def on_status_change(self, listener: Listener[SyncStatus]) -> Subscription:
        """Register ``listener``; it receives the current status on the next tick."""

        subscription = self._status_listeners.add(listener)
        self._status_listeners.prime(listener, self.status)
        return subscription

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------
    def draft(self, table: str, payload: Mapping[str, Any]) -> Record:
        """Assign an id to a new record without sending or caching it."""

        record_id = self._claim_id(table, payload.get(FIELD_ID))
        now = utcnow()
        record = Record(
            table=table,
            id=record_id,
            owner=self.auth.user_id,
            data=self._clean(payload),
            created_at=now,
            updated_at=now,
            state=RecordState.DRAFTED,
        )
        self._drafts[(table, record_id)] = record
        return record

    def abandon(self, table: str, record_id: str) -> bool:
        """Drop a record that never reached the remote store.

        Works for drafts and for optimistic creates still waiting in the
        queue. Returns ``False`` when the record was already sent.
        """

        key = (table, record_id)
        if self._drafts.pop(key, None) is not None:
            self.ids.release(record_id)
            return True
        record = self._collections.get(table, {}).get(record_id)
        if record is None or record.state is not RecordState.OPTIMISTIC or key in self._confirmed_versions:
            return False
        lock = self._table_locks.get(table)
        if lock is not None and lock.locked():
            return False
        operations = [op for op in self.store.list_operations(table=table) if op.record_id == record_id]
        if not operations or operations[0].kind is not OperationKind.CREATE:
            return False
        self.store.remove(op.entry_id for op in operations)
        self._collections[table].pop(record_id, None)
        self.ids.release(record_id)
        self._status = replace(self._status, pending_operations=self.store.pending_count())
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def create(self, table: str, payload: Mapping[str, Any]) -> MutationResult:
        result = await self._create(table, payload)
        await self._after_mutation(table, [result.record.id])
        return result

    async def batch_create(self, table: str, payloads: Iterable[Mapping[str, Any]]) -> list[MutationResult]:
        results: list[MutationResult] = []
        try:
            for payload in payloads:
                results.append(await self._create(table, payload))
        finally:
            if results:
                await self._after_mutation(table, [result.record.id for result in results])
        return results

    async def update(self, table: str, record_id: str, patch: Mapping[str, Any]) -> MutationResult:
        self._require_owner()
        current = await self._lookup(table, record_id)
        if current.is_deleted:
            raise RejectionError(f"{table}/{record_id} is deleted", reason="deleted")
        changes = self._clean(patch)
        now = utcnow()
        optimistic = current.with_patch(changes, updated_at=now, state=RecordState.OPTIMISTIC)
        remote_patch = {**changes, FIELD_UPDATED_AT: format_ts(now)}
        result = await self._write_existing(table, optimistic, remote_patch, OperationKind.UPDATE)
        await self._after_mutation(table, [record_id])
        return result

    async def soft_delete(self, table: str, record_id: str) -> MutationResult:
        self._require_owner()
        current = await self._lookup(table, record_id)
        if current.is_deleted:
            return MutationResult(current, current.state is RecordState.OPTIMISTIC)
        now = utcnow()
        optimistic = replace(current, deleted_at=now, updated_at=now, state=RecordState.OPTIMISTIC)
        remote_patch = {FIELD_DELETED_AT: format_ts(now), FIELD_UPDATED_AT: format_ts(now)}
        result = await self._write_existing(table, optimistic, remote_patch, OperationKind.DELETE)
        await self._after_mutation(table, [record_id])
        return result

    async def _create(self, table: str, payload: Mapping[str, Any]) -> MutationResult:
        owner = self._require_owner()
        supplied = payload.get(FIELD_ID)
        draft = self._drafts.pop((table, str(supplied)), None) if supplied else None
        record_id = draft.id if draft else self._claim_id(table, supplied)
        now = utcnow()
        record = Record(
            table=table,
            id=record_id,
            owner=owner,
            data=self._clean(payload),
            created_at=draft.created_at if draft else now,
            updated_at=now,
            state=RecordState.DRAFTED,
        )
        row = record.to_row()
        try:
            stored = await self._call(self.remote.insert(table, row))
        except ConnectivityError as err:
            optimistic = replace(record, state=RecordState.OPTIMISTIC)
            self._apply(optimistic)
            await self._enqueue(table, record_id, OperationKind.CREATE, row, err)
            return MutationResult(optimistic, True)
        except ConflictError as err:
            raise IdentityCollisionError(
                f"{table} id {record_id} already exists remotely", reason="id_collision", status=err.status
            ) from err
        except IdentityCollisionError:
            raise
        except SyncError:
            self.ids.release(record_id)
            raise
        confirmed = self._confirm(table, stored)
        return MutationResult(confirmed, False)

    async def _write_existing(
        self,
        table: str,
        optimistic: Record,
        remote_patch: dict[str, Any],
        kind: OperationKind,
    ) -> MutationResult:
        key = (table, optimistic.id)
        if self.store.has_pending(table, optimistic.id) or key not in self._confirmed_versions:
            # Queue behind the earlier writes for this id to keep issuance order.
            self._apply(optimistic)
            await self._enqueue(table, optimistic.id, kind, remote_patch, None)
            return MutationResult(optimistic, True)
        try:
            stored, resolution = await self._send_update(table, optimistic.id, remote_patch, optimistic.updated_at)
        except ConnectivityError as err:
            self._apply(optimistic)
            await self._enqueue(table, optimistic.id, kind, remote_patch, err)
            return MutationResult(optimistic, True)
        confirmed = self._confirm(table, stored)
        return MutationResult(confirmed, False, resolution)

    async def _send_update(
        self,
        table: str,
        record_id: str,
        patch: Mapping[str, Any],
        local_updated_at: datetime | None,
    ) -> tuple[dict[str, Any], ConflictResolution | None]:
        expected = self._confirmed_versions.get((table, record_id))
        try:
            stored = await self._call(self.remote.update(table, record_id, patch, expected_updated_at=expected))
            return stored, None
        except ConflictError as err:
            if err.current is None:
                raise RejectionError(str(err), reason="conflict", status=err.status) from err
            resolution = self.conflicts.resolve(table, local_updated_at, err.current)
            self._status = replace(self._status, conflicts_resolved=self.conflicts.resolved)
            if not resolution.local_wins:
                return dict(err.current), resolution
            forced = dict(patch)
            if err.current.get(FIELD_DELETED_AT) and FIELD_DELETED_AT not in forced:
                # The newer local write restores a row deleted earlier elsewhere.
                forced[FIELD_DELETED_AT] = None
            stored = await self._call(
                self.remote.update(
                    table, record_id, forced, expected_updated_at=err.current.get(FIELD_UPDATED_AT)
                )
            )
            return stored, resolution

    # ------------------------------------------------------------------
    # Queue replay
    # ------------------------------------------------------------------
    async def flush_queue(self, *, force: bool = False) -> FlushResult:
        """Replay queued operations, in enqueue order per table.

        ``force`` ignores the retry backoff schedule.
        """

        owner = self.auth.user_id
        if owner is None:
            _LOGGER.debug("Skipping queue flush while signed out")
            return FlushResult(0, 0)
        tables = self.store.pending_tables()
        if not tables:
            return FlushResult(0, 0)
        outcomes = await asyncio.gather(*(self._flush_table(table, owner, force) for table in tables))
        succeeded = sum(outcome[0] for outcome in outcomes)
        failed = sum(outcome[1] for outcome in outcomes)
        changes: dict[str, Any] = {
            "pending_operations": self.store.pending_count(),
            "exhausted_operations": self.store.exhausted_count(),
        }
        if succeeded:
            changes["last_sync"] = utcnow()
        if failed == 0:
            changes["error"] = None
            self._consecutive_failures = 0
        elif succeeded == 0:
            self._consecutive_failures += 1
        await self._publish_status(**changes)
        _LOGGER.info("Queue flush finished: %d succeeded, %d failed", succeeded, failed)
        for table, outcome in zip(tables, outcomes, strict=True):
            if outcome[2]:
                await self._after_mutation(table, outcome[2])
        return FlushResult(succeeded, failed)

    async def force_sync(self) -> FlushResult:
        return await self.flush_queue(force=True)

    async def clear_queue(self) -> int:
        removed = self.store.clear()
        _LOGGER.info("Cleared %d queued operations", removed)
        await self._publish_status(pending_operations=0, exhausted_operations=0, error=None)
        return removed

    async def _flush_table(self, table: str, owner: str, force: bool) -> tuple[int, int, list[str]]:
        async with self._lock_for(table):
            succeeded = failed = 0
            touched: list[str] = []
            blocked: set[str] = set()
            now = utcnow()
            for operation in self.store.list_operations(table=table):
                if operation.owner != owner:
                    # Queued by another account; it waits for that account to sign in again.
                    continue
                if operation.record_id in blocked:
                    continue
                if not force and not operation.is_due(now):
                    blocked.add(operation.record_id)
                    continue
                try:
                    stored = await self._replay(operation)
                except ConnectivityError as err:
                    failed += 1
                    blocked.add(operation.record_id)
                    attempts = operation.attempts + 1
                    if attempts >= self.config.max_attempts:
                        self._exhaust(operation, err)
                        touched.append(operation.record_id)
                    else:
                        retry_at = utcnow() + timedelta(seconds=self.config.backoff_for(attempts))
                        self.store.mark_attempt(operation.entry_id, error=str(err), next_attempt_at=retry_at)
                        log_limited(
                            _LOGGER,
                            logging.WARNING,
                            f"replay:{table}",
                            "Replay of %s %s/%s failed (attempt %d/%d): %s",
                            operation.kind.value,
                            table,
                            operation.record_id,
                            attempts,
                            self.config.max_attempts,
                            err,
                        )
                except SyncError as err:
                    failed += 1
                    blocked.add(operation.record_id)
                    self._exhaust(operation, err)
                    touched.append(operation.record_id)
                else:
                    succeeded += 1
                    self.store.remove([operation.entry_id])
                    self._confirm(table, stored, keep_local=self.store.has_pending(table, operation.record_id))
                    touched.append(operation.record_id)
            return succeeded, failed, touched

    async def _replay(self, operation: PendingOperation) -> dict[str, Any]:
        if operation.kind is OperationKind.CREATE:
            try:
                return await self._call(self.remote.insert(operation.table, operation.payload))
            except ConflictError as err:
                raise IdentityCollisionError(str(err), reason="id_collision", status=err.status) from err
        local_updated_at = parse_ts(operation.payload.get(FIELD_UPDATED_AT))
        stored, _ = await self._send_update(operation.table, operation.record_id, operation.payload, local_updated_at)
        return stored

    def _exhaust(self, operation: PendingOperation, err: SyncError) -> None:
        self.store.mark_exhausted(operation.entry_id, error=str(err))
        error = QueueExhaustedError(
            f"{operation.kind.value} {operation.table}/{operation.record_id} abandoned: {err}",
            entry_id=operation.entry_id,
            record_id=operation.record_id,
            table=operation.table,
            reason=err.reason,
        )
        self.last_exhausted.append(error)
        self._status = replace(self._status, error=str(error))
        _LOGGER.error("%s", error)
        table = self._collections.get(operation.table, {})
        record = table.get(operation.record_id)
        if record is None:
            return
        if operation.kind is OperationKind.CREATE:
            table[operation.record_id] = replace(record, state=RecordState.REJECTED)
        # Rejected updates keep the local version until the next refetch.

    # ------------------------------------------------------------------
    # Refetch, used by the reconciliation layer
    # ------------------------------------------------------------------
    async def refresh_collection(self, table: str) -> list[Record]:
        """Replace the cached collection with the authoritative remote rows.

        Records with queued writes keep their local version. A failed refetch
        leaves the cache as it is.
        """

        generation = self._refresh_generation.get(table, 0) + 1
        self._refresh_generation[table] = generation
        started_seq = self._mutation_seq
        owner = self.auth.user_id
        if owner is None:
            return self.collection(table)
        try:
            rows = await self._call(self.remote.select_all(table, owner=owner, include_deleted=True))
        except ConnectivityError as err:
            log_limited(_LOGGER, logging.WARNING, f"refetch:{table}", "Refetch of %s failed: %s", table, err)
            return self.collection(table)
        except RejectionError as err:
            _LOGGER.warning("Refetch of %s rejected: %s", table, err)
            return self.collection(table)
        if self._refresh_generation.get(table) != generation:
            return self.collection(table)

        current = self._collections.get(table, {})
        pending = self.store.pending_record_ids(table)
        fresh: dict[str, Record] = {}
        for row in rows:
            record = Record.from_row(table, row)
            key = (table, record.id)
            self._confirmed_versions[key] = row.get(FIELD_UPDATED_AT)
            local = current.get(record.id)
            if local is not None and (record.id in pending or self._local_seq.get(key, 0) > started_seq):
                fresh[record.id] = local
            else:
                fresh[record.id] = record
        for record_id, local in current.items():
            if record_id in fresh:
                continue
            key = (table, record_id)
            if record_id in pending or self._local_seq.get(key, 0) > started_seq:
                fresh[record_id] = local
        self._collections[table] = fresh
        return self.collection(table)

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------
    async def set_online(self, online: bool) -> FlushResult | None:
        was_online = self._status.is_online
        if online:
            await self._publish_status(is_online=True, error=None)
            if not was_online:
                _LOGGER.info("Connection restored; replaying %d queued operations", self.store.pending_count())
                return await self.flush_queue(force=True)
            return None
        await self._publish_status(
            is_online=False,
            is_connected=False,
            error="offline; changes will sync when the connection returns",
        )
        return None

    async def check_connection(self) -> bool:
        if not self._status.is_online:
            return False
        try:
            ok = bool(await asyncio.wait_for(self.remote.ping(), timeout=self.config.request_timeout))
        except (asyncio.TimeoutError, SyncError, OSError) as err:
            _LOGGER.debug("Connection check failed: %s", err)
            ok = False
        was_connected = self._status.is_connected
        await self._publish_status(is_connected=ok)
        if ok and not was_connected and self.store.pending_count():
            await self.flush_queue()
        return ok

    async def async_start(self) -> None:
        """Reload the durable queue and start the background replay loop."""

        if self._task and not self._task.done():
            return
        await self._publish_status(
            pending_operations=self.store.pending_count(),
            exhausted_operations=self.store.exhausted_count(),
        )
        subscribe = getattr(self.auth, "on_session_change", None)
        if subscribe is not None and self._auth_subscription is None:
            self._auth_subscription = subscribe(self._handle_auth_event)
        self._task = asyncio.get_running_loop().create_task(self._run_forever())

    async def async_stop(self) -> None:
        if self._auth_subscription is not None:
            self._auth_subscription.cancel()
            self._auth_subscription = None
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    def next_delay(self) -> float:
        base = float(self.config.flush_interval)
        if not self._consecutive_failures:
            return base
        ceiling = max(base, self.config.retry_backoff_max)
        return min(base * (2**self._consecutive_failures), ceiling)

    async def _handle_auth_event(self, event: AuthEvent) -> None:
        owner = event.session.user_id if isinstance(event, SignedIn | TokenRefreshed) else None
        if owner != self._cache_owner:
            # Cached rows belong to the previous principal.
            self._collections.clear()
            self._drafts.clear()
            self._confirmed_versions.clear()
            self._cache_owner = owner
        if owner is not None and self.store.pending_count():
            await self.flush_queue()

    async def _run_forever(self) -> None:
        loop = asyncio.get_running_loop()
        last_flush = loop.time()
        while True:
            try:
                connected = await self.check_connection()
                if connected and self.store.pending_count() and loop.time() - last_flush >= self.next_delay():
                    await self.flush_queue()
                    last_flush = loop.time()
            except asyncio.CancelledError:
                raise
            except Exception as err:  # pragma: no cover
                _LOGGER.exception("Unexpected sync error: %s", err)
                self._status = replace(self._status, error=str(err))
            await asyncio.sleep(min(float(self.config.health_check_interval), self.next_delay()))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _call(self, awaitable: Awaitable[T]) -> T:
        if not self._status.is_online:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ConnectivityError("client is offline", reason="offline")
        try:
            result = await asyncio.wait_for(awaitable, timeout=self.config.request_timeout)
        except asyncio.TimeoutError as err:
            await self._mark_disconnected(f"remote call exceeded {self.config.request_timeout}s")
            raise ConnectivityError(
                f"remote call exceeded {self.config.request_timeout}s", reason="timeout"
            ) from err
        except ConnectivityError as err:
            await self._mark_disconnected(str(err))
            raise
        except SyncError:
            raise
        except OSError as err:
            wrapped = classify_exception(err)
            await self._mark_disconnected(str(wrapped))
            raise wrapped from err
        if not self._status.is_connected:
            await self._publish_status(is_connected=True)
        return result

    async def _mark_disconnected(self, error: str) -> None:
        if self._status.is_connected or self._status.error != error:
            await self._publish_status(is_connected=False, error=error)

    async def _enqueue(
        self,
        table: str,
        record_id: str,
        kind: OperationKind,
        payload: Mapping[str, Any],
        err: SyncError | None,
    ) -> PendingOperation:
        now = utcnow()
        operation = self.store.enqueue(
            PendingOperation(
                entry_id=generate_id(),
                table=table,
                record_id=record_id,
                kind=kind,
                payload=dict(payload),
                enqueued_at=now,
                next_attempt_at=now,
                last_error=str(err) if err else None,
                owner=self.auth.user_id,
            )
        )
        if err is not None:
            log_limited(
                _LOGGER,
                logging.WARNING,
                f"queue:{table}",
                "Queued %s %s/%s for later sync: %s",
                kind.value,
                table,
                record_id,
                err,
            )
        await self._publish_status(pending_operations=self.store.pending_count())
        return operation

    async def _after_mutation(self, table: str, record_ids: list[str]) -> None:
        if self.reconciler is None or not record_ids:
            return
        await self.reconciler.after_mutation_many(table, record_ids)

    async def _lookup(self, table: str, record_id: str) -> Record:
        record = self._collections.get(table, {}).get(record_id)
        if record is None:
            await self.refresh_collection(table)
            record = self._collections.get(table, {}).get(record_id)
        if record is None or record.state is RecordState.REJECTED:
            raise RejectionError(f"{table}/{record_id} not found", reason="not_found", status=404)
        return record

    def _confirm(self, table: str, row: Mapping[str, Any], *, keep_local: bool = False) -> Record:
        record = Record.from_row(table, row)
        self._confirmed_versions[(table, record.id)] = row.get(FIELD_UPDATED_AT)
        # The cached row guards this id from now on.
        self.ids.release(record.id)
        if keep_local and record.id in self._collections.get(table, {}):
            return self._collections[table][record.id]
        self._apply(record)
        return record

    def _apply(self, record: Record) -> None:
        self._mutation_seq += 1
        self._local_seq[(record.table, record.id)] = self._mutation_seq
        self._collections.setdefault(record.table, {})[record.id] = record

    def _claim_id(self, table: str, supplied: Any) -> str:
        if supplied:
            record_id = str(supplied)
            if record_id in self._collections.get(table, {}):
                raise IdentityCollisionError(f"{table} id {record_id} already in use", reason="id_collision")
            self.ids.claim(record_id)
            return record_id
        record_id = self.ids.generate()
        if record_id in self._collections.get(table, {}):
            raise IdentityCollisionError(f"{table} id {record_id} already in use", reason="id_collision")
        return record_id

    def _require_owner(self) -> str:
        owner = self.auth.user_id
        if not owner:
            raise RejectionError("user not authenticated", reason="not_authenticated", status=401)
        return owner

    def _clean(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in payload.items() if key not in RESERVED_FIELDS}

    def _lock_for(self, table: str) -> asyncio.Lock:
        lock = self._table_locks.get(table)
        if lock is None:
            lock = self._table_locks[table] = asyncio.Lock()
        return lock

    async def _publish_status(self, **changes: Any) -> None:
        updated = replace(self._status, **changes)
        if updated == self._status:
            return
        self._status = updated
        await self._status_listeners.notify(updated)


__all__ = ["FlushResult", "MutationResult", "SessionSource", "SyncCoordinator", "SyncStatus"]
