from __future__ import annotations

import asyncio
import json

import pytest
from aiohttp import ClientConnectionError

from bookkeeper.cloudsync import (
    ConflictError,
    ConnectivityError,
    IdentityCollisionError,
    InMemoryRemoteStore,
    RejectionError,
    RestRemoteStore,
)


class DummyResp:
    def __init__(self, status, data=None):
        self.status = status
        self._data = data

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self):
        if self._data is None:
            return ""
        return json.dumps(self._data)


class Session:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, json=None, params=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "json": json, "params": params, "headers": headers})
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


def make_client(responses, **kwargs) -> tuple[RestRemoteStore, Session]:
    session = Session(responses)
    client = RestRemoteStore(session, "https://api.example.com/", token_provider=lambda: "tok", api_key="anon", **kwargs)
    return client, session


@pytest.mark.asyncio
async def test_insert_posts_row_with_credentials() -> None:
    client, session = make_client([DummyResp(201, {"row": {"id": "a1", "user_id": "u1", "name": "Asha"}})])

    row = await client.insert("customers", {"id": "a1", "name": "Asha"})

    assert row["id"] == "a1"
    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://api.example.com/rest/customers"
    assert call["headers"]["Authorization"] == "Bearer tok"
    assert call["headers"]["apikey"] == "anon"


@pytest.mark.asyncio
async def test_update_sends_expected_version() -> None:
    client, session = make_client([DummyResp(200, {"row": {"id": "a1", "name": "B"}})])

    await client.update("customers", "a1", {"name": "B"}, expected_updated_at="2025-01-01T00:00:00Z")

    call = session.calls[0]
    assert call["method"] == "PATCH"
    assert call["url"].endswith("/rest/customers/a1")
    assert call["json"] == {"patch": {"name": "B"}, "expected_updated_at": "2025-01-01T00:00:00Z"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "body", "error", "reason"),
    [
        (503, {"detail": "down"}, ConnectivityError, "server_unavailable"),
        (429, None, ConnectivityError, "server_unavailable"),
        (401, {"detail": "invalid token"}, RejectionError, "unauthorized"),
        (404, {"detail": "missing"}, RejectionError, "not_found"),
        (400, {"detail": "column amount of relation bills does not exist"}, RejectionError, "invalid"),
        (409, {"detail": {"error": "id_collision", "id": "a1"}}, IdentityCollisionError, "id_collision"),
    ],
)
async def test_error_statuses_are_classified(status, body, error, reason) -> None:
    client, _ = make_client([DummyResp(status, body)])
    with pytest.raises(error) as err:
        await client.insert("customers", {"id": "a1"})
    assert err.value.reason == reason
    assert err.value.status == status


@pytest.mark.asyncio
async def test_conflict_carries_current_row() -> None:
    current = {"id": "a1", "updated_at": "2025-01-02T00:00:00Z", "deleted_at": None}
    client, _ = make_client([DummyResp(409, {"detail": {"error": "conflict", "current": current}})])

    with pytest.raises(ConflictError) as err:
        await client.update("customers", "a1", {"name": "x"})
    assert err.value.current == current


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("exc", "reason"),
    [
        (ClientConnectionError("refused"), "network"),
        (asyncio.TimeoutError(), "timeout"),
        (OSError("unreachable"), "network"),
    ],
)
async def test_transport_errors_are_connectivity(exc, reason) -> None:
    client, _ = make_client([exc])
    with pytest.raises(ConnectivityError) as err:
        await client.select_all("customers", owner="u1")
    assert err.value.reason == reason


@pytest.mark.asyncio
async def test_select_all_and_ping() -> None:
    client, session = make_client(
        [
            DummyResp(200, {"rows": [{"id": "a1"}, {"id": "a2"}]}),
            DummyResp(200, {"ok": True}),
            DummyResp(500, None),
        ]
    )

    rows = await client.select_all("customers", owner="u1", include_deleted=True)
    assert [row["id"] for row in rows] == ["a1", "a2"]
    assert session.calls[0]["params"] == {"include_deleted": "true"}
    assert await client.ping() is True
    assert await client.ping() is False


@pytest.mark.asyncio
async def test_malformed_write_response_is_rejected() -> None:
    client, _ = make_client([DummyResp(201, {"status": "ok"})])
    with pytest.raises(RejectionError) as err:
        await client.insert("customers", {"id": "a1"})
    assert err.value.reason == "malformed"


# ----------------------------------------------------------------------
# In-memory reference store


@pytest.mark.asyncio
async def test_insert_is_a_keyed_upsert() -> None:
    remote = InMemoryRemoteStore()
    row = {"id": "a1", "user_id": "u1", "name": "Asha"}

    first = await remote.insert("customers", row)
    second = await remote.insert("customers", row)

    assert len(remote.rows) == 1
    assert first["created_at"] == second["created_at"]


@pytest.mark.asyncio
async def test_insert_rejects_foreign_owner_and_unknown_columns() -> None:
    remote = InMemoryRemoteStore(schema={"bills": {"total"}})
    await remote.insert("bills", {"id": "b1", "user_id": "u1", "total": 10})

    with pytest.raises(IdentityCollisionError):
        await remote.insert("bills", {"id": "b1", "user_id": "u2", "total": 10})
    with pytest.raises(RejectionError, match="column amount of relation bills does not exist"):
        await remote.insert("bills", {"id": "b2", "user_id": "u1", "amount": 10})


@pytest.mark.asyncio
async def test_patch_detects_stale_and_deleted_rows() -> None:
    remote = InMemoryRemoteStore()
    stored = remote.upsert_row("customers", {"id": "a1", "user_id": "u1", "updated_at": "2025-01-02T00:00:00Z"})

    with pytest.raises(ConflictError) as stale:
        await remote.update("customers", "a1", {"name": "x"}, expected_updated_at="2025-01-01T00:00:00Z")
    assert stale.value.current["id"] == "a1"

    await remote.update(
        "customers",
        "a1",
        {"deleted_at": "2025-01-03T00:00:00Z", "updated_at": "2025-01-03T00:00:00Z"},
        expected_updated_at=stored["updated_at"],
    )
    with pytest.raises(ConflictError):
        await remote.update("customers", "a1", {"name": "x"}, expected_updated_at="2025-01-03T00:00:00Z")
    with pytest.raises(RejectionError) as missing:
        await remote.update("customers", "zz", {"name": "x"})
    assert missing.value.status == 404


@pytest.mark.asyncio
async def test_offline_and_injected_failures() -> None:
    remote = InMemoryRemoteStore()
    remote.online = False
    with pytest.raises(ConnectivityError):
        await remote.select_all("customers", owner=None)
    assert await remote.ping() is False

    remote.online = True
    remote.fail_next(RejectionError("nope", reason="invalid"))
    with pytest.raises(RejectionError):
        await remote.select_all("customers", owner=None)
    assert await remote.select_all("customers", owner=None) == []
    assert [call[0] for call in remote.calls] == ["select", "select", "select"]
