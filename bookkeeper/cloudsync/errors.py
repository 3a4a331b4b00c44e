"""Error taxonomy shared by the coordinator and its collaborators."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from aiohttp import ClientConnectionError, ClientError, ClientPayloadError

# HTTP statuses that mean "try again later" rather than "the write is wrong".
RETRYABLE_STATUSES: frozenset[int] = frozenset({408, 425, 429, 500, 502, 503, 504})


class SyncError(RuntimeError):
    """Base class for failures raised by the sync layer."""

    def __init__(self, message: str, *, reason: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.status = status


class ConnectivityError(SyncError):
    """The remote store could not be reached; the write may be retried."""


class RejectionError(SyncError):
    """The remote store refused the write; retrying will not help."""


class ConflictError(SyncError):
    """The targeted row changed remotely since the local copy was taken."""

    def __init__(
        self,
        message: str,
        *,
        current: Mapping[str, Any] | None = None,
        reason: str | None = "conflict",
        status: int | None = 409,
    ) -> None:
        super().__init__(message, reason=reason, status=status)
        self.current = dict(current) if current else None


class IdentityCollisionError(SyncError):
    """A generated identifier is already in use by another record."""


class IdentityUnavailableError(SyncError):
    """The operating system entropy source could not produce an identifier."""


class QueueExhaustedError(SyncError):
    """A queued operation ran out of retries or was rejected during replay."""

    def __init__(self, message: str, *, entry_id: str, record_id: str, table: str, reason: str | None = None) -> None:
        super().__init__(message, reason=reason or "exhausted")
        self.entry_id = entry_id
        self.record_id = record_id
        self.table = table


def classify_status(status: int, message: str, *, body: Any = None) -> SyncError:
    """Map an HTTP error status onto the sync error taxonomy."""

    if status in RETRYABLE_STATUSES or status >= 500:
        return ConnectivityError(message, reason="server_unavailable", status=status)
    if status == 409:
        current = body.get("current") if isinstance(body, Mapping) else None
        if isinstance(body, Mapping) and body.get("error") == "id_collision":
            return IdentityCollisionError(message, reason="id_collision", status=status)
        return ConflictError(message, current=current if isinstance(current, Mapping) else None)
    if status in (401, 403):
        return RejectionError(message, reason="unauthorized", status=status)
    if status == 404:
        return RejectionError(message, reason="not_found", status=status)
    return RejectionError(message, reason="invalid", status=status)


def classify_exception(err: BaseException) -> SyncError:
    """Wrap a transport-level exception in the sync error taxonomy."""

    if isinstance(err, SyncError):
        return err
    if isinstance(err, (asyncio.TimeoutError, TimeoutError)):
        return ConnectivityError(f"request timed out: {err}", reason="timeout")
    if isinstance(err, (ClientConnectionError, ClientPayloadError, ConnectionError, OSError)):
        return ConnectivityError(f"network unreachable: {err}", reason="network")
    if isinstance(err, ClientError):
        return ConnectivityError(f"request failed: {err}", reason="network")
    return RejectionError(str(err) or err.__class__.__name__, reason="unexpected")


__all__ = [
    "ConflictError",
    "ConnectivityError",
    "IdentityCollisionError",
    "IdentityUnavailableError",
    "QueueExhaustedError",
    "RejectionError",
    "SyncError",
    "classify_exception",
    "classify_status",
]
