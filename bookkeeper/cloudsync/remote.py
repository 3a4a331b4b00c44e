"""Remote data store collaborators.

``RestRemoteStore`` talks to the hosted row API over HTTP. ``InMemoryRemoteStore``
is the reference implementation used for local development and tests; the
reference cloud service in :mod:`cloud.api.main` is built on top of it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout

from ..const import FIELD_CREATED_AT, FIELD_DELETED_AT, FIELD_ID, FIELD_OWNER, FIELD_SYNCED_AT, FIELD_UPDATED_AT
from .errors import (
    ConflictError,
    ConnectivityError,
    IdentityCollisionError,
    RejectionError,
    SyncError,
    classify_exception,
    classify_status,
)
from .records import format_ts, parse_ts, utcnow

_LOGGER = logging.getLogger(__name__)


class RemoteStore(Protocol):
    """Row operations the coordinator needs from the hosted database."""

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        """Upsert ``row`` keyed by its ``id`` and return the stored row."""

    async def update(
        self,
        table: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        expected_updated_at: str | None = None,
    ) -> dict[str, Any]:
        """Apply ``patch`` to an existing row and return the stored row."""

    async def select_all(self, table: str, *, owner: str | None, include_deleted: bool = False) -> list[dict[str, Any]]:
        """Return the rows of ``table`` visible to ``owner``."""

    async def ping(self) -> bool:
        """Return ``True`` when the store answers a health probe."""


class RestRemoteStore:
    """HTTP client for the hosted row API."""

    def __init__(
        self,
        session: ClientSession,
        base_url: str,
        *,
        token_provider: Callable[[], str | None] | None = None,
        api_key: str | None = None,
        timeout: float = 15.0,
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._api_key = api_key
        self._timeout = ClientTimeout(total=timeout)

    # ------------------------------------------------------------------
    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        payload = await self._request("POST", f"/rest/{table}", json_body=dict(row))
        return self._expect_row(payload, table)

    async def update(
        self,
        table: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        expected_updated_at: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"patch": dict(patch)}
        if expected_updated_at:
            body["expected_updated_at"] = expected_updated_at
        payload = await self._request("PATCH", f"/rest/{table}/{record_id}", json_body=body)
        return self._expect_row(payload, table)

    async def select_all(self, table: str, *, owner: str | None, include_deleted: bool = False) -> list[dict[str, Any]]:
        params = {"include_deleted": "true" if include_deleted else "false"}
        payload = await self._request("GET", f"/rest/{table}", params=params)
        rows = payload.get("rows") if isinstance(payload, Mapping) else payload
        if not isinstance(rows, list):
            raise RejectionError(f"{table} select returned malformed payload", reason="malformed")
        return [dict(row) for row in rows if isinstance(row, Mapping)]

    async def ping(self) -> bool:
        try:
            await self._request("GET", "/health")
        except SyncError as err:
            _LOGGER.debug("Health probe failed: %s", err)
            return False
        return True

    # ------------------------------------------------------------------
    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._token_provider() if self._token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self._api_key:
            headers["apikey"] = self._api_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Mapping[str, Any] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self.session.request(
                method,
                url,
                json=json_body,
                params=params,
                headers=self._headers(),
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                payload = self._decode(text)
                if resp.status >= 400:
                    detail = payload.get("detail", payload) if isinstance(payload, Mapping) else payload
                    raise classify_status(resp.status, f"{method} {path} failed: HTTP {resp.status} {text}", body=detail)
                return payload
        except SyncError:
            raise
        except (ClientError, asyncio.TimeoutError, OSError) as err:
            raise classify_exception(err) from err

    def _decode(self, text: str) -> Any:
        if not text:
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return {"message": text}

    def _expect_row(self, payload: Any, table: str) -> dict[str, Any]:
        if isinstance(payload, Mapping) and isinstance(payload.get("row"), Mapping):
            payload = payload["row"]
        if not isinstance(payload, Mapping) or FIELD_ID not in payload:
            raise RejectionError(f"{table} write returned no row", reason="malformed")
        return dict(payload)


class InMemoryRemoteStore:
    """In-memory reference implementation of the hosted row API.

    ``online`` switches connectivity, ``schema`` restricts the accepted columns
    per table, and ``latency`` delays every call so timeouts can be exercised.
    """

    def __init__(self, *, schema: Mapping[str, set[str]] | None = None, latency: float = 0.0) -> None:
        self.rows: dict[tuple[str, str], dict[str, Any]] = {}
        self.online = True
        self.latency = latency
        self.schema = {table: set(columns) for table, columns in (schema or {}).items()}
        self.calls: list[tuple[str, str, str | None]] = []
        self._injected: list[SyncError] = []

    def fail_next(self, error: SyncError) -> None:
        """Raise ``error`` from the next remote call instead of serving it."""

        self._injected.append(error)

    # ------------------------------------------------------------------
    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        await self._enter("insert", table, row.get(FIELD_ID))
        return self.upsert_row(table, row)

    async def update(
        self,
        table: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        expected_updated_at: str | None = None,
    ) -> dict[str, Any]:
        await self._enter("update", table, record_id)
        return self.patch_row(table, record_id, patch, expected_updated_at=expected_updated_at)

    async def select_all(self, table: str, *, owner: str | None, include_deleted: bool = False) -> list[dict[str, Any]]:
        await self._enter("select", table, None)
        return self.list_rows(table, owner=owner, include_deleted=include_deleted)

    async def ping(self) -> bool:
        if self.latency:
            await asyncio.sleep(self.latency)
        return self.online

    # ------------------------------------------------------------------
    def upsert_row(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        record_id = row.get(FIELD_ID)
        if not record_id:
            raise RejectionError(f"{table} row missing {FIELD_ID}", reason="invalid", status=422)
        self._check_columns(table, row)
        key = (table, str(record_id))
        existing = self.rows.get(key)
        owner = row.get(FIELD_OWNER)
        if existing is not None and existing.get(FIELD_OWNER) != owner:
            raise IdentityCollisionError(
                f"{table} id {record_id} belongs to another owner", reason="id_collision", status=409
            )
        if existing is not None:
            # A replay carries the original created_at; anything else is a second record.
            incoming = parse_ts(row.get(FIELD_CREATED_AT))
            if incoming is not None and incoming != parse_ts(existing.get(FIELD_CREATED_AT)):
                raise IdentityCollisionError(
                    f"{table} id {record_id} already exists", reason="id_collision", status=409
                )
        now = format_ts(utcnow())
        stored = dict(existing or {})
        stored.update(row)
        stored[FIELD_ID] = str(record_id)
        stored[FIELD_CREATED_AT] = (existing or {}).get(FIELD_CREATED_AT) or row.get(FIELD_CREATED_AT) or now
        stored[FIELD_UPDATED_AT] = row.get(FIELD_UPDATED_AT) or now
        stored[FIELD_SYNCED_AT] = now
        stored.setdefault(FIELD_DELETED_AT, None)
        self.rows[key] = stored
        return dict(stored)

    def patch_row(
        self,
        table: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        expected_updated_at: str | None = None,
        owner: str | None = None,
    ) -> dict[str, Any]:
        key = (table, str(record_id))
        current = self.rows.get(key)
        if current is None or (owner is not None and current.get(FIELD_OWNER) != owner):
            raise RejectionError(f"{table} id {record_id} not found", reason="not_found", status=404)
        self._check_columns(table, patch)
        if expected_updated_at is not None:
            expected = parse_ts(expected_updated_at)
            stored = parse_ts(current.get(FIELD_UPDATED_AT))
            if stored is not None and (expected is None or stored > expected):
                raise ConflictError(f"{table} id {record_id} changed remotely", current=current)
            if current.get(FIELD_DELETED_AT) and FIELD_DELETED_AT not in patch:
                raise ConflictError(f"{table} id {record_id} was deleted remotely", current=current)
        updated = dict(current)
        updated.update({k: v for k, v in patch.items() if k not in (FIELD_ID, FIELD_OWNER, FIELD_CREATED_AT)})
        now = format_ts(utcnow())
        updated[FIELD_UPDATED_AT] = patch.get(FIELD_UPDATED_AT) or now
        updated[FIELD_SYNCED_AT] = now
        self.rows[key] = updated
        return dict(updated)

    def list_rows(self, table: str, *, owner: str | None, include_deleted: bool = False) -> list[dict[str, Any]]:
        rows = [
            dict(row)
            for (row_table, _), row in self.rows.items()
            if row_table == table
            and (owner is None or row.get(FIELD_OWNER) == owner)
            and (include_deleted or not row.get(FIELD_DELETED_AT))
        ]
        rows.sort(key=lambda row: str(row.get(FIELD_CREATED_AT) or ""), reverse=True)
        return rows

    # ------------------------------------------------------------------
    async def _enter(self, op: str, table: str, record_id: Any) -> None:
        self.calls.append((op, table, str(record_id) if record_id is not None else None))
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._injected:
            raise self._injected.pop(0)
        if not self.online:
            raise ConnectivityError("remote store unreachable", reason="offline")

    def _check_columns(self, table: str, row: Mapping[str, Any]) -> None:
        allowed = self.schema.get(table)
        if not allowed:
            return
        system = {FIELD_ID, FIELD_OWNER, FIELD_CREATED_AT, FIELD_UPDATED_AT, FIELD_SYNCED_AT, FIELD_DELETED_AT}
        unknown = sorted(key for key in row if key not in allowed and key not in system)
        if unknown:
            raise RejectionError(
                f"column {unknown[0]} of relation {table} does not exist", reason="invalid", status=400
            )


__all__ = ["InMemoryRemoteStore", "RemoteStore", "RestRemoteStore"]
