"""Keep UI selections consistent with the authoritative collection after writes."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from .events import Listener, ListenerSet, Subscription
from .records import Record

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .coordinator import SyncCoordinator

_LOGGER = logging.getLogger(__name__)


class Selection:
    """Projection of one record as currently shown in a detail view.

    The value is only ever swapped as a whole; listeners receive the new
    snapshot, or ``None`` once the record is gone or soft-deleted.
    """

    def __init__(self, reconciler: Reconciler, table: str, record_id: str, record: Record | None) -> None:
        self.table = table
        self.record_id = record_id
        self._reconciler = reconciler
        self._record = record
        self._listeners: ListenerSet[Record | None] = ListenerSet(f"selection {table}/{record_id}")
        self.released = False

    @property
    def record(self) -> Record | None:
        return self._record

    def subscribe(self, listener: Listener[Record | None]) -> Subscription:
        return self._listeners.add(listener)

    def release(self) -> None:
        if not self.released:
            self.released = True
            self._listeners.clear()
            self._reconciler._forget(self)

    async def _replace(self, record: Record | None) -> None:
        if record == self._record:
            return
        self._record = record
        await self._listeners.notify(record)


class Reconciler:
    """Refetch a table after each accepted mutation and recompute selections.

    Every reconciliation bumps a generation counter per affected record; when
    two overlap, only the one started last may replace a selection.
    """

    def __init__(self, coordinator: SyncCoordinator) -> None:
        self.coordinator = coordinator
        self._selections: dict[tuple[str, str], list[Selection]] = {}
        self._generations: dict[tuple[str, str], int] = {}
        self.reconciliations = 0
        coordinator.attach_reconciler(self)

    def select(self, table: str, record_id: str) -> Selection:
        selection = Selection(self, table, record_id, self.coordinator.get(table, record_id))
        self._selections.setdefault((table, record_id), []).append(selection)
        return selection

    def generation(self, table: str, record_id: str) -> int:
        return self._generations.get((table, record_id), 0)

    async def after_mutation(self, table: str, record_id: str) -> None:
        await self.after_mutation_many(table, [record_id])

    async def after_mutation_many(self, table: str, record_ids: Iterable[str]) -> None:
        tokens: dict[str, int] = {}
        for record_id in record_ids:
            key = (table, record_id)
            self._generations[key] = self._generations.get(key, 0) + 1
            tokens[record_id] = self._generations[key]

        await self.coordinator.refresh_collection(table)
        self.reconciliations += 1

        for record_id, token in tokens.items():
            key = (table, record_id)
            if self._generations.get(key) != token:
                _LOGGER.debug("Reconciliation of %s/%s superseded by a newer one", table, record_id)
                continue
            snapshot = self.coordinator.get(table, record_id)
            for selection in list(self._selections.get(key, ())):
                await selection._replace(snapshot)

    def _forget(self, selection: Selection) -> None:
        key = (selection.table, selection.record_id)
        selections = self._selections.get(key)
        if not selections:
            return
        if selection in selections:
            selections.remove(selection)
        if not selections:
            del self._selections[key]


__all__ = ["Reconciler", "Selection"]
