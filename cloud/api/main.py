from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status

from bookkeeper.cloudsync import ConflictError, IdentityCollisionError, InMemoryRemoteStore, RejectionError
from bookkeeper.const import FIELD_ID, FIELD_OWNER, SYNCED_TABLES

from .auth import Principal, TokenRegistry, principal_dependency

_LOGGER = logging.getLogger(__name__)


class CloudState:
    """In-memory reference implementation of the hosted row and auth API."""

    def __init__(self, *, tables: set[str] | None = None) -> None:
        self.rows = InMemoryRemoteStore()
        self.auth = TokenRegistry()
        self.tables = set(tables or SYNCED_TABLES)

    # ------------------------------------------------------------------
    def insert(self, table: str, row: Mapping[str, Any], *, owner: str) -> dict[str, Any]:
        self._check_table(table)
        if not row.get(FIELD_ID):
            raise HTTPException(status_code=422, detail=f"{FIELD_ID} required")
        payload = dict(row)
        payload[FIELD_OWNER] = owner
        try:
            return self.rows.upsert_row(table, payload)
        except IdentityCollisionError as err:
            _LOGGER.warning("Rejected insert into %s: %s", table, err)
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error": "id_collision", "id": str(row[FIELD_ID])},
            ) from err
        except RejectionError as err:
            raise HTTPException(status_code=err.status or 400, detail=str(err)) from err

    def update(
        self,
        table: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        owner: str,
        expected_updated_at: str | None = None,
    ) -> dict[str, Any]:
        self._check_table(table)
        try:
            return self.rows.patch_row(
                table,
                record_id,
                patch,
                expected_updated_at=expected_updated_at,
                owner=owner,
            )
        except ConflictError as err:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error": "conflict", "current": err.current},
            ) from err
        except RejectionError as err:
            raise HTTPException(status_code=err.status or 400, detail=str(err)) from err

    def select(self, table: str, *, owner: str, include_deleted: bool) -> list[dict[str, Any]]:
        self._check_table(table)
        return self.rows.list_rows(table, owner=owner, include_deleted=include_deleted)

    def _check_table(self, table: str) -> None:
        if table not in self.tables:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"relation {table} does not exist")


def _auth_field(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{key} required")
    return value.strip()


def create_app(*, tables: set[str] | None = None) -> FastAPI:
    app = FastAPI()
    state = CloudState(tables=tables)
    app.state.state = state
    app.state.auth = state.auth

    @app.get("/health")
    async def handle_health() -> dict[str, Any]:
        return {"ok": True}

    @app.post("/auth/register", status_code=status.HTTP_201_CREATED)
    async def handle_register(data: dict[str, Any]) -> dict[str, Any]:
        account = state.auth.register(_auth_field(data, "email"), _auth_field(data, "password"))
        return {"user": {"id": account.user_id, "email": account.email}}

    @app.post("/auth/login")
    async def handle_login(data: dict[str, Any]) -> dict[str, Any]:
        return state.auth.login(_auth_field(data, "email"), _auth_field(data, "password"))

    @app.post("/auth/token")
    async def handle_token(data: dict[str, Any]) -> dict[str, Any]:
        return state.auth.exchange(_auth_field(data, "code"))

    @app.post("/auth/refresh")
    async def handle_refresh(data: dict[str, Any]) -> dict[str, Any]:
        return state.auth.refresh(_auth_field(data, "refresh_token"))

    @app.post("/auth/logout")
    async def handle_logout(
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        state.auth.revoke(principal.access_token)
        return {"ok": True}

    @app.post("/rest/{table}", status_code=status.HTTP_201_CREATED)
    async def handle_insert(
        table: str,
        data: dict[str, Any],
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        return {"row": state.insert(table, data, owner=principal.user_id)}

    @app.patch("/rest/{table}/{record_id}")
    async def handle_update(
        table: str,
        record_id: str,
        data: dict[str, Any],
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        patch = data.get("patch")
        if not isinstance(patch, Mapping):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="patch required")
        expected = data.get("expected_updated_at")
        row = state.update(
            table,
            record_id,
            patch,
            owner=principal.user_id,
            expected_updated_at=str(expected) if expected else None,
        )
        return {"row": row}

    @app.get("/rest/{table}")
    async def handle_select(
        table: str,
        request: Request,
        principal: Principal = Depends(principal_dependency),  # noqa: B008
        include_deleted: bool = Query(False),
    ) -> dict[str, Any]:
        rows = state.select(table, owner=principal.user_id, include_deleted=include_deleted)
        _LOGGER.debug("%s %s returned %d rows", request.method, request.url.path, len(rows))
        return {"rows": rows}

    return app


def main() -> None:
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8080)


if __name__ == "__main__":
    main()
