from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from ..const import FIELD_UPDATED_AT
from .records import Record, RecordState, parse_ts

_LOGGER = logging.getLogger(__name__)


class ConflictWinner(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(slots=True)
class WriteStamp:
    """When a side last wrote the row."""

    ts: datetime | None

    def dominates(self, other: WriteStamp) -> bool:
        # Ties and unknown remote stamps go to the local write.
        if other.ts is None:
            return True
        if self.ts is None:
            return False
        return self.ts >= other.ts


@dataclass(slots=True)
class ConflictResolution:
    winner: ConflictWinner
    remote: Record

    @property
    def local_wins(self) -> bool:
        return self.winner is ConflictWinner.LOCAL


class ConflictResolver:
    """Last-write-wins on ``updated_at`` between a local mutation and the remote row.

    This deliberately ignores field level merges: whichever side wrote last
    keeps the whole row.
    """

    def __init__(self) -> None:
        self.resolved = 0

    def resolve(
        self,
        table: str,
        local_updated_at: datetime | None,
        current: Mapping[str, Any],
    ) -> ConflictResolution:
        remote = Record.from_row(table, current)
        local = WriteStamp(local_updated_at)
        remote_stamp = WriteStamp(parse_ts(current.get(FIELD_UPDATED_AT)))
        winner = ConflictWinner.LOCAL if local.dominates(remote_stamp) else ConflictWinner.REMOTE
        self.resolved += 1
        _LOGGER.warning(
            "Conflict on %s/%s resolved by last write: %s wins (local=%s remote=%s%s)",
            table,
            remote.id,
            winner.value,
            local.ts.isoformat() if local.ts else None,
            remote_stamp.ts.isoformat() if remote_stamp.ts else None,
            ", remote soft-deleted" if remote.state is RecordState.SOFT_DELETED else "",
        )
        return ConflictResolution(winner=winner, remote=remote)


__all__ = ["ConflictResolution", "ConflictResolver", "ConflictWinner", "WriteStamp"]
