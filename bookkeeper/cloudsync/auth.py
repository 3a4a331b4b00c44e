"""Session handling against the hosted auth API."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib.parse import urlencode

from aiohttp import ClientError, ClientSession, ClientTimeout

from ..const import SESSION_STATE_KEY
from .events import AuthEvent, Listener, ListenerSet, SignedIn, SignedOut, Subscription, TokenRefreshed
from .options import SyncConfig
from .records import parse_ts
from .store import LocalSyncStore

_LOGGER = logging.getLogger(__name__)


class AuthError(RuntimeError):
    """Raised when the auth API rejects credentials or returns malformed data."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True, slots=True)
class Session:
    """The authenticated principal that owns every record it creates."""

    user_id: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    email: str | None = None
    provider: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, now: datetime | None = None) -> Session:
        """Create a :class:`Session` from an auth API JSON payload."""

        access_token = str(payload.get("access_token") or "").strip()
        if not access_token:
            raise AuthError("access_token missing from response", reason="malformed")

        user = payload.get("user")
        user_id_raw = payload.get("user_id")
        if not user_id_raw and isinstance(user, Mapping):
            user_id_raw = user.get("id")
        user_id = str(user_id_raw or "").strip()
        if not user_id:
            raise AuthError("user id missing from response", reason="malformed")

        refresh = payload.get("refresh_token")
        refresh_token = str(refresh).strip() if refresh else None

        expires_at: datetime | None = None
        expires_in = payload.get("expires_in")
        expiry = payload.get("expires_at")
        if isinstance(expires_in, int | float) and not isinstance(expires_in, bool):
            now = now or datetime.now(tz=UTC)
            expires_at = now + timedelta(seconds=float(expires_in))
        elif isinstance(expiry, int | float) and not isinstance(expiry, bool):
            expires_at = datetime.fromtimestamp(float(expiry), tz=UTC)
        elif isinstance(expiry, str) and expiry.strip():
            expires_at = parse_ts(expiry.strip())
            if expires_at is None:
                raise AuthError(f"invalid expiry timestamp: {expiry}", reason="malformed")

        email = payload.get("email")
        if not email and isinstance(user, Mapping):
            email = user.get("email")
        provider = payload.get("provider")
        return cls(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            email=str(email).strip() if email else None,
            provider=str(provider) if provider else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "email": self.email,
            "provider": self.provider,
        }

    def is_expired(self, *, now: datetime | None = None, threshold_seconds: int = 0) -> bool:
        """Return ``True`` if the access token has expired or is close to expiry."""

        if self.expires_at is None:
            return False
        now = now or datetime.now(tz=UTC)
        return (self.expires_at - now).total_seconds() <= threshold_seconds


class AuthBackend(Protocol):
    def authorize_url(self, provider: str, *, redirect_to: str | None = None) -> str: ...

    async def async_login(self, email: str, password: str) -> Session: ...

    async def async_exchange_code(self, code: str) -> Session: ...

    async def async_refresh(self, refresh_token: str) -> Session: ...

    async def async_logout(self, access_token: str) -> None: ...

    async def async_close(self) -> None: ...


class HttpAuthClient:
    """Thin wrapper around the hosted auth endpoints."""

    def __init__(self, base_url: str, session: ClientSession | None = None, *, timeout: float = 15.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session or ClientSession()
        self._owns_session = session is None
        self._timeout = ClientTimeout(total=timeout)

    async def async_close(self) -> None:
        if self._owns_session and not self._session.closed:
            await self._session.close()

    def authorize_url(self, provider: str, *, redirect_to: str | None = None) -> str:
        params = {"provider": provider}
        if redirect_to:
            params["redirect_to"] = redirect_to
        return f"{self._base_url}/auth/authorize?{urlencode(params)}"

    async def async_login(self, email: str, password: str) -> Session:
        """Authenticate with email/password credentials."""

        data = await self._post("/auth/login", {"email": email, "password": password}, action="login")
        return Session.from_payload(data)

    async def async_exchange_code(self, code: str) -> Session:
        """Exchange the OAuth callback code for a session."""

        data = await self._post("/auth/token", {"code": code}, action="code exchange")
        return Session.from_payload(data)

    async def async_refresh(self, refresh_token: str) -> Session:
        """Refresh an access token using the stored refresh token."""

        data = await self._post("/auth/refresh", {"refresh_token": refresh_token}, action="refresh")
        return Session.from_payload(data)

    async def async_logout(self, access_token: str) -> None:
        await self._post("/auth/logout", {}, action="logout", token=access_token)

    async def _post(
        self, path: str, payload: Mapping[str, Any], *, action: str, token: str | None = None
    ) -> Mapping[str, Any]:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            async with self._session.post(
                f"{self._base_url}{path}", json=dict(payload), headers=headers, timeout=self._timeout
            ) as resp:
                data = await resp.json(content_type=None)
                if resp.status >= 400:
                    message = data.get("message") or data.get("detail") if isinstance(data, Mapping) else None
                    raise AuthError(str(message or f"{action} failed: HTTP {resp.status}"), reason="rejected")
        except ClientError as err:
            raise AuthError(f"{action} request failed: {err}", reason="network") from err
        except asyncio.TimeoutError as err:
            raise AuthError(f"{action} request timed out", reason="timeout") from err
        except ValueError as err:
            raise AuthError(f"{action} returned invalid JSON: {err}", reason="malformed") from err
        if not isinstance(data, Mapping):
            raise AuthError(f"{action} returned malformed payload", reason="malformed")
        return data


class SessionManager:
    """Owns the current session and notifies subscribers about changes.

    Every subscriber gets an initial event, including ``SignedOut`` when no
    session exists, so loading state that waits on it always settles.
    """

    def __init__(
        self,
        client: AuthBackend,
        *,
        store: LocalSyncStore | None = None,
        config: SyncConfig | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.config = config or SyncConfig()
        self._session: Session | None = None
        self._listeners: ListenerSet[AuthEvent] = ListenerSet("session")
        self._initialized = False
        self._init_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._next_refresh_at: datetime | None = None
        self._pending_provider: str | None = None
        self.last_refresh_error: str | None = None

    # ------------------------------------------------------------------
    @property
    def current_session(self) -> Session | None:
        return self._session

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def user_id(self) -> str | None:
        return self._session.user_id if self._session else None

    def access_token(self) -> str | None:
        return self._session.access_token if self._session else None

    def current_event(self) -> AuthEvent:
        if self._session is None:
            return SignedOut()
        return SignedIn(self._session)

    def on_session_change(self, listener: Listener[AuthEvent]) -> Subscription:
        """Register ``listener`` and schedule its initial event."""

        subscription = self._listeners.add(listener)
        if self._init_task is None or self._init_task.done():
            self._listeners.prime(listener, self.current_event)
        # otherwise async_initialize() broadcasts once the restore settles
        return subscription

    # ------------------------------------------------------------------
    async def async_initialize(self) -> AuthEvent:
        """Restore a persisted session, bounded by the request timeout."""

        if self._init_task is None:
            self._init_task = asyncio.get_running_loop().create_task(self._restore())
        await self._init_task
        return self.current_event()

    async def _restore(self) -> None:
        reason = "no_session"
        try:
            raw = self.store.get_state(SESSION_STATE_KEY) if self.store else None
            if isinstance(raw, Mapping):
                session = Session.from_payload(raw)
                if session.is_expired(threshold_seconds=self.config.session_refresh_margin):
                    if not session.refresh_token:
                        raise AuthError("persisted session expired", reason="expired")
                    session = await asyncio.wait_for(
                        self.client.async_refresh(session.refresh_token), timeout=self.config.request_timeout
                    )
                self._set_session(session)
        except asyncio.TimeoutError:
            _LOGGER.warning("Session restore timed out after %ss", self.config.request_timeout)
            reason = "timeout"
            self._set_session(None)
        except AuthError as err:
            _LOGGER.info("Discarding persisted session: %s", err)
            reason = err.reason or "restore_failed"
            self._set_session(None)
        except Exception as err:
            # Keep the persisted session so the next start can retry it.
            _LOGGER.warning("Session restore failed: %s", err, exc_info=True)
            reason = "restore_failed"
            self._session = None
        finally:
            self._initialized = True
        event: AuthEvent = SignedIn(self._session) if self._session else SignedOut(reason)
        await self._listeners.notify(event)
        self._schedule_refresh()

    # ------------------------------------------------------------------
    def sign_in(self, provider: str, *, redirect_to: str | None = None) -> str:
        """Start an OAuth sign-in; the session arrives via the callback."""

        self._pending_provider = provider
        return self.client.authorize_url(provider, redirect_to=redirect_to)

    async def complete_oauth_callback(self, code: str) -> Session:
        provider = self._pending_provider
        self._pending_provider = None
        try:
            session = await asyncio.wait_for(
                self.client.async_exchange_code(code), timeout=self.config.request_timeout
            )
        except asyncio.TimeoutError as err:
            await self._signed_out("callback_timeout")
            raise AuthError("OAuth callback timed out", reason="timeout") from err
        except AuthError:
            await self._signed_out("callback_failed")
            raise
        if provider and not session.provider:
            session = replace(session, provider=provider)
        return await self._signed_in(session)

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        try:
            session = await asyncio.wait_for(
                self.client.async_login(email, password), timeout=self.config.request_timeout
            )
        except asyncio.TimeoutError as err:
            raise AuthError("login timed out", reason="timeout") from err
        return await self._signed_in(session)

    async def refresh(self) -> Session:
        session = self._session
        if session is None or not session.refresh_token:
            raise AuthError("no refresh token available", reason="no_session")
        try:
            refreshed = await asyncio.wait_for(
                self.client.async_refresh(session.refresh_token), timeout=self.config.request_timeout
            )
        except asyncio.TimeoutError as err:
            self.last_refresh_error = "timeout"
            raise AuthError("token refresh timed out", reason="timeout") from err
        except AuthError as err:
            self.last_refresh_error = str(err)
            raise
        self.last_refresh_error = None
        self._set_session(refreshed)
        await self._listeners.notify(TokenRefreshed(refreshed))
        self._schedule_refresh()
        return refreshed

    async def sign_out(self) -> None:
        session = self._session
        if session is not None:
            try:
                await asyncio.wait_for(
                    self.client.async_logout(session.access_token), timeout=self.config.request_timeout
                )
            except (AuthError, asyncio.TimeoutError) as err:
                _LOGGER.info("Remote sign-out failed, clearing local session anyway: %s", err)
        await self._signed_out("signed_out")

    async def async_close(self) -> None:
        self._cancel_refresh()
        self._listeners.clear()
        await self.client.async_close()

    # ------------------------------------------------------------------
    async def _signed_in(self, session: Session) -> Session:
        self._set_session(session)
        self._initialized = True
        await self._listeners.notify(SignedIn(session))
        self._schedule_refresh()
        return session

    async def _signed_out(self, reason: str) -> None:
        self._set_session(None)
        self._initialized = True
        self._cancel_refresh()
        await self._listeners.notify(SignedOut(reason))

    def _set_session(self, session: Session | None) -> None:
        self._session = session
        if self.store is None:
            return
        if session is None:
            self.store.delete_state(SESSION_STATE_KEY)
        else:
            self.store.set_state(SESSION_STATE_KEY, session.to_dict())

    def _cancel_refresh(self) -> None:
        current = asyncio.current_task()
        if self._refresh_task and not self._refresh_task.done() and self._refresh_task is not current:
            self._refresh_task.cancel()
        self._refresh_task = None
        self._next_refresh_at = None

    def _schedule_refresh(self, *, fallback_seconds: float | None = None) -> None:
        self._cancel_refresh()
        session = self._session
        if session is None or not session.refresh_token:
            return
        if session.expires_at is None:
            if fallback_seconds is None:
                return
            delay = max(float(fallback_seconds), 0.0)
        else:
            now = datetime.now(tz=UTC)
            delay = max((session.expires_at - now).total_seconds() - self.config.session_refresh_margin, 0.0)
            if delay == 0.0 and fallback_seconds:
                delay = float(fallback_seconds)
        self._next_refresh_at = datetime.now(tz=UTC) + timedelta(seconds=delay)
        self._refresh_task = asyncio.get_running_loop().create_task(self._auto_refresh_loop(delay))

    async def _auto_refresh_loop(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await self.refresh()
        except AuthError as err:
            _LOGGER.warning("Automatic token refresh failed: %s", err)
            if err.reason in ("timeout", "network"):
                self._schedule_refresh(fallback_seconds=self.config.session_refresh_margin or 60)
            else:
                await self._signed_out("refresh_failed")

    def status(self) -> dict[str, Any]:
        session = self._session
        return {
            "signed_in": session is not None,
            "user_id": session.user_id if session else None,
            "expires_at": session.expires_at.isoformat() if session and session.expires_at else None,
            "next_refresh_at": self._next_refresh_at.isoformat() if self._next_refresh_at else None,
            "last_refresh_error": self.last_refresh_error,
        }


__all__ = [
    "AuthBackend",
    "AuthError",
    "HttpAuthClient",
    "Session",
    "SessionManager",
]
