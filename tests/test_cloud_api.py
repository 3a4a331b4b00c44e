from __future__ import annotations

import pytest
from fastapi import HTTPException, status
from fastapi.testclient import TestClient

from cloud.api.auth import TokenRegistry, _bearer
from cloud.api.main import create_app


def _sign_up(client: TestClient, email: str) -> dict:
    resp = client.post("/auth/register", json={"email": email, "password": "pw"})
    assert resp.status_code == 201
    resp = client.post("/auth/login", json={"email": email, "password": "pw"})
    assert resp.status_code == 200
    return resp.json()


def _headers(tokens: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {tokens['access_token']}"}


def test_health() -> None:
    client = TestClient(create_app())
    assert client.get("/health").json() == {"ok": True}


def test_insert_is_owner_scoped_upsert() -> None:
    client = TestClient(create_app())
    alice = _sign_up(client, "alice@example.com")
    bob = _sign_up(client, "bob@example.com")

    resp = client.post("/rest/customers", json={"id": "c1", "name": "Asha", "user_id": "spoofed"}, headers=_headers(alice))
    assert resp.status_code == 201
    row = resp.json()["row"]
    assert row["user_id"] == alice["user"]["id"]
    assert row["synced_at"]

    again = client.post("/rest/customers", json={"id": "c1", "name": "Asha"}, headers=_headers(alice))
    assert again.status_code == 201
    assert again.json()["row"]["created_at"] == row["created_at"]

    clash = client.post("/rest/customers", json={"id": "c1", "name": "Bob"}, headers=_headers(bob))
    assert clash.status_code == 409
    assert clash.json()["detail"]["error"] == "id_collision"

    missing = client.post("/rest/customers", json={"name": "No id"}, headers=_headers(alice))
    assert missing.status_code == 422

    unknown = client.post("/rest/payslips", json={"id": "p1"}, headers=_headers(alice))
    assert unknown.status_code == 404

    listed = client.get("/rest/customers", headers=_headers(bob))
    assert listed.json() == {"rows": []}


def test_requests_require_bearer_token() -> None:
    client = TestClient(create_app())
    assert client.get("/rest/customers").status_code == 401
    assert client.get("/rest/customers", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_patch_conflicts_and_soft_delete() -> None:
    client = TestClient(create_app())
    tokens = _sign_up(client, "alice@example.com")
    headers = _headers(tokens)
    created = client.post(
        "/rest/customers",
        json={"id": "c1", "name": "A", "updated_at": "2025-01-01T00:00:00Z"},
        headers=headers,
    ).json()["row"]

    ok = client.patch(
        "/rest/customers/c1",
        json={"patch": {"name": "B", "updated_at": "2025-01-02T00:00:00Z"}, "expected_updated_at": created["updated_at"]},
        headers=headers,
    )
    assert ok.status_code == 200
    assert ok.json()["row"]["name"] == "B"

    stale = client.patch(
        "/rest/customers/c1",
        json={"patch": {"name": "C"}, "expected_updated_at": "2025-01-01T00:00:00Z"},
        headers=headers,
    )
    assert stale.status_code == 409
    detail = stale.json()["detail"]
    assert detail["error"] == "conflict"
    assert detail["current"]["name"] == "B"

    deleted = client.patch(
        "/rest/customers/c1",
        json={"patch": {"deleted_at": "2025-01-03T00:00:00Z", "updated_at": "2025-01-03T00:00:00Z"}},
        headers=headers,
    )
    assert deleted.status_code == 200
    assert client.get("/rest/customers", headers=headers).json()["rows"] == []
    rows = client.get("/rest/customers", params={"include_deleted": "true"}, headers=headers).json()["rows"]
    assert [row["id"] for row in rows] == ["c1"]

    assert client.patch("/rest/customers/zz", json={"patch": {}}, headers=headers).status_code == 404
    assert client.patch("/rest/customers/c1", json={}, headers=headers).status_code == 400


def test_token_lifecycle() -> None:
    app = create_app()
    client = TestClient(app)
    tokens = _sign_up(client, "alice@example.com")

    refreshed = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert refreshed.status_code == 200
    assert client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 401

    code = app.state.auth.issue_code("alice@example.com")
    exchanged = client.post("/auth/token", json={"code": code})
    assert exchanged.status_code == 200
    assert exchanged.json()["user"]["email"] == "alice@example.com"
    assert client.post("/auth/token", json={"code": code}).status_code == 400

    headers = _headers(refreshed.json())
    assert client.post("/auth/logout", headers=headers).json() == {"ok": True}
    assert client.get("/rest/customers", headers=headers).status_code == 401

    bad = client.post("/auth/login", json={"email": "alice@example.com", "password": "wrong"})
    assert bad.status_code == 401


def test_bearer_parsing() -> None:
    assert _bearer("Bearer abc ") == "abc"
    with pytest.raises(HTTPException) as exc:
        _bearer("Basic abc")
    assert exc.value.status_code == status.HTTP_401_UNAUTHORIZED
    assert exc.value.detail["error"] == "invalid_authorization"


def test_registry_rejects_expired_tokens() -> None:
    from datetime import timedelta

    registry = TokenRegistry(ttl=timedelta(seconds=-1))
    registry.register("a@example.com", "pw", user_id="u1")
    issued = registry.login("a@example.com", "pw")
    with pytest.raises(HTTPException):
        registry.authenticate(issued["access_token"])


def test_insert_rejects_a_second_record_with_the_same_id() -> None:
    client = TestClient(create_app())
    headers = _headers(_sign_up(client, "alice@example.com"))
    original = {"id": "c1", "name": "Original", "created_at": "2025-01-01T00:00:00Z"}

    assert client.post("/rest/customers", json=original, headers=headers).status_code == 201
    assert client.post("/rest/customers", json=original, headers=headers).status_code == 201

    clash = client.post(
        "/rest/customers",
        json={"id": "c1", "name": "Other", "created_at": "2025-02-01T00:00:00Z"},
        headers=headers,
    )
    assert clash.status_code == 409
    assert clash.json()["detail"] == {"error": "id_collision", "id": "c1"}
    rows = client.get("/rest/customers", headers=headers).json()["rows"]
    assert [row["name"] for row in rows] == ["Original"]
