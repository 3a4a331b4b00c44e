"""Sync client configuration built from an options mapping."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import voluptuous as vol

from ..const import (
    CONF_API_KEY,
    CONF_BASE_URL,
    CONF_FLUSH_INTERVAL,
    CONF_HEALTH_CHECK_INTERVAL,
    CONF_MAX_ATTEMPTS,
    CONF_REQUEST_TIMEOUT,
    CONF_RETRY_BACKOFF_BASE,
    CONF_RETRY_BACKOFF_MAX,
    CONF_SESSION_ACCESS_TOKEN,
    CONF_SESSION_EMAIL,
    CONF_SESSION_EXPIRES_AT,
    CONF_SESSION_PROVIDER,
    CONF_SESSION_REFRESH_MARGIN,
    CONF_SESSION_REFRESH_TOKEN,
    CONF_SESSION_USER_ID,
    CONF_STORE_PATH,
    DEFAULT_FLUSH_INTERVAL,
    DEFAULT_HEALTH_CHECK_INTERVAL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_BACKOFF_BASE,
    DEFAULT_RETRY_BACKOFF_MAX,
    DEFAULT_SESSION_REFRESH_MARGIN,
    DEFAULT_STORE_PATH,
    MIN_FLUSH_INTERVAL,
)

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .auth import Session

_POSITIVE_FLOAT = vol.All(vol.Coerce(float), vol.Range(min=0, min_included=False))

OPTIONS_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_BASE_URL, default=""): vol.Any(None, str),
        vol.Optional(CONF_API_KEY, default=""): vol.Any(None, str),
        vol.Optional(CONF_STORE_PATH, default=DEFAULT_STORE_PATH): vol.Coerce(str),
        vol.Optional(CONF_REQUEST_TIMEOUT, default=DEFAULT_REQUEST_TIMEOUT): _POSITIVE_FLOAT,
        vol.Optional(CONF_MAX_ATTEMPTS, default=DEFAULT_MAX_ATTEMPTS): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Optional(CONF_RETRY_BACKOFF_BASE, default=DEFAULT_RETRY_BACKOFF_BASE): vol.All(
            vol.Coerce(float), vol.Range(min=0)
        ),
        vol.Optional(CONF_RETRY_BACKOFF_MAX, default=DEFAULT_RETRY_BACKOFF_MAX): vol.All(
            vol.Coerce(float), vol.Range(min=0)
        ),
        vol.Optional(CONF_FLUSH_INTERVAL, default=DEFAULT_FLUSH_INTERVAL): vol.All(
            vol.Coerce(int), vol.Clamp(min=MIN_FLUSH_INTERVAL)
        ),
        vol.Optional(CONF_SESSION_REFRESH_MARGIN, default=DEFAULT_SESSION_REFRESH_MARGIN): vol.All(
            vol.Coerce(int), vol.Range(min=0)
        ),
        vol.Optional(CONF_HEALTH_CHECK_INTERVAL, default=DEFAULT_HEALTH_CHECK_INTERVAL): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
    },
    extra=vol.ALLOW_EXTRA,
)


@dataclass(slots=True)
class SyncConfig:
    """Configuration shared by the coordinator, remote store and auth client."""

    base_url: str = ""
    api_key: str = ""
    store_path: str = DEFAULT_STORE_PATH
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_base: float = DEFAULT_RETRY_BACKOFF_BASE
    retry_backoff_max: float = DEFAULT_RETRY_BACKOFF_MAX
    flush_interval: int = DEFAULT_FLUSH_INTERVAL
    session_refresh_margin: int = DEFAULT_SESSION_REFRESH_MARGIN
    health_check_interval: int = DEFAULT_HEALTH_CHECK_INTERVAL

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> SyncConfig:
        validated = OPTIONS_SCHEMA(dict(options))
        return cls(
            base_url=str(validated.get(CONF_BASE_URL) or "").strip().rstrip("/"),
            api_key=str(validated.get(CONF_API_KEY) or "").strip(),
            store_path=validated[CONF_STORE_PATH],
            request_timeout=validated[CONF_REQUEST_TIMEOUT],
            max_attempts=validated[CONF_MAX_ATTEMPTS],
            retry_backoff_base=validated[CONF_RETRY_BACKOFF_BASE],
            retry_backoff_max=validated[CONF_RETRY_BACKOFF_MAX],
            flush_interval=validated[CONF_FLUSH_INTERVAL],
            session_refresh_margin=validated[CONF_SESSION_REFRESH_MARGIN],
            health_check_interval=validated[CONF_HEALTH_CHECK_INTERVAL],
        )

    @classmethod
    def from_file(cls, path: str | Path) -> SyncConfig:
        with open(path, encoding="utf-8") as handle:
            payload = json.load(handle)
        if not isinstance(payload, Mapping):
            raise vol.Invalid(f"{path} must contain a JSON object")
        return cls.from_options(payload)

    @property
    def remote_configured(self) -> bool:
        return bool(self.base_url)

    def backoff_for(self, attempts: int) -> float:
        """Seconds to wait before retry number ``attempts`` (1-based)."""

        if attempts <= 0:
            return 0.0
        delay = self.retry_backoff_base * (2 ** (attempts - 1))
        return min(delay, self.retry_backoff_max)


def merge_session_options(options: Mapping[str, Any], session: Session | None) -> dict[str, Any]:
    """Return updated options with the supplied session metadata."""

    opts = dict(options)
    keys = (
        CONF_SESSION_USER_ID,
        CONF_SESSION_EMAIL,
        CONF_SESSION_ACCESS_TOKEN,
        CONF_SESSION_REFRESH_TOKEN,
        CONF_SESSION_EXPIRES_AT,
        CONF_SESSION_PROVIDER,
    )
    if session is None:
        for key in keys:
            opts.pop(key, None)
        return opts

    opts[CONF_SESSION_USER_ID] = session.user_id
    opts[CONF_SESSION_ACCESS_TOKEN] = session.access_token
    for key, value in (
        (CONF_SESSION_EMAIL, session.email),
        (CONF_SESSION_REFRESH_TOKEN, session.refresh_token),
        (CONF_SESSION_EXPIRES_AT, session.expires_at.isoformat() if session.expires_at else None),
        (CONF_SESSION_PROVIDER, session.provider),
    ):
        if value:
            opts[key] = value
        else:
            opts.pop(key, None)
    return opts


__all__ = ["OPTIONS_SCHEMA", "SyncConfig", "merge_session_options"]
