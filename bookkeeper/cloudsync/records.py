from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..const import (
    FIELD_CREATED_AT,
    FIELD_DELETED_AT,
    FIELD_ID,
    FIELD_OWNER,
    FIELD_SYNCED_AT,
    FIELD_UPDATED_AT,
    RESERVED_FIELDS,
)


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def format_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_ts(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


class RecordState(str, Enum):
    """Client visible lifecycle of a record."""

    DRAFTED = "drafted"
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    SOFT_DELETED = "soft_deleted"


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    PENDING = "pending"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True, slots=True)
class Record:
    """A business row as seen by the client, plus its sync bookkeeping."""

    table: str
    id: str
    owner: str | None
    data: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    synced_at: datetime | None = None
    deleted_at: datetime | None = None
    state: RecordState = RecordState.DRAFTED

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def with_patch(self, patch: Mapping[str, Any], *, updated_at: datetime, state: RecordState) -> Record:
        merged = dict(self.data)
        merged.update(patch)
        return replace(self, data=merged, updated_at=updated_at, state=state)

    def to_row(self) -> dict[str, Any]:
        row: dict[str, Any] = dict(self.data)
        row[FIELD_ID] = self.id
        row[FIELD_OWNER] = self.owner
        row[FIELD_CREATED_AT] = format_ts(self.created_at)
        row[FIELD_UPDATED_AT] = format_ts(self.updated_at)
        row[FIELD_DELETED_AT] = format_ts(self.deleted_at)
        return row

    @classmethod
    def from_row(cls, table: str, row: Mapping[str, Any], *, state: RecordState | None = None) -> Record:
        record_id = row.get(FIELD_ID)
        if not record_id:
            raise ValueError(f"{table} row missing {FIELD_ID}")
        deleted_at = parse_ts(row.get(FIELD_DELETED_AT))
        if state is None:
            state = RecordState.SOFT_DELETED if deleted_at else RecordState.CONFIRMED
        synced_at = parse_ts(row.get(FIELD_SYNCED_AT)) or parse_ts(row.get(FIELD_UPDATED_AT))
        return cls(
            table=table,
            id=str(record_id),
            owner=str(row[FIELD_OWNER]) if row.get(FIELD_OWNER) else None,
            data={key: value for key, value in row.items() if key not in RESERVED_FIELDS},
            created_at=parse_ts(row.get(FIELD_CREATED_AT)),
            updated_at=parse_ts(row.get(FIELD_UPDATED_AT)),
            synced_at=synced_at,
            deleted_at=deleted_at,
            state=state,
        )


@dataclass(slots=True)
class PendingOperation:
    """A mutation waiting in the durable queue for the remote store."""

    entry_id: str
    table: str
    record_id: str
    kind: OperationKind
    payload: dict[str, Any]
    enqueued_at: datetime
    attempts: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    status: OperationStatus = OperationStatus.PENDING
    owner: str | None = None

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "entry_id": self.entry_id,
            "table": self.table,
            "record_id": self.record_id,
            "kind": self.kind.value,
            "payload": self.payload,
            "enqueued_at": format_ts(self.enqueued_at),
            "attempts": self.attempts,
            "status": self.status.value,
        }
        if self.next_attempt_at is not None:
            payload["next_attempt_at"] = format_ts(self.next_attempt_at)
        if self.last_error is not None:
            payload["last_error"] = self.last_error
        if self.owner is not None:
            payload["owner"] = self.owner
        return payload

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PendingOperation:
        body = dict(payload.get("payload") or {})
        # Queues written before owners were recorded fall back to the row owner.
        owner = payload.get("owner") or body.get(FIELD_OWNER)
        return cls(
            entry_id=str(payload["entry_id"]),
            table=str(payload["table"]),
            record_id=str(payload["record_id"]),
            kind=OperationKind(payload["kind"]),
            payload=body,
            enqueued_at=parse_ts(payload.get("enqueued_at")) or utcnow(),
            attempts=int(payload.get("attempts") or 0),
            next_attempt_at=parse_ts(payload.get("next_attempt_at")),
            last_error=payload.get("last_error"),
            status=OperationStatus(payload.get("status") or OperationStatus.PENDING.value),
            owner=str(owner) if owner else None,
        )


def encode_ndjson(operations: Iterable[PendingOperation]) -> str:
    return "\n".join(operation.to_json_line() for operation in operations)


def decode_ndjson(payload: str | bytes) -> list[PendingOperation]:
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    lines = [line for line in payload.splitlines() if line.strip()]
    return [PendingOperation.from_dict(json.loads(line)) for line in lines]


__all__ = [
    "OperationKind",
    "OperationStatus",
    "PendingOperation",
    "Record",
    "RecordState",
    "decode_ndjson",
    "encode_ndjson",
    "format_ts",
    "parse_ts",
    "utcnow",
]
