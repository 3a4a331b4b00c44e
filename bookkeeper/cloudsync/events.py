"""Notification primitives: auth state variants and cancellable subscriptions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .auth import Session

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class SignedIn:
    session: Session


@dataclass(frozen=True, slots=True)
class SignedOut:
    reason: str = "no_session"


@dataclass(frozen=True, slots=True)
class TokenRefreshed:
    session: Session


AuthEvent = SignedIn | SignedOut | TokenRefreshed


class Subscription:
    """Handle returned by ``on_*`` registration helpers."""

    def __init__(self, unsubscribe: Callable[[], None]) -> None:
        self._unsubscribe: Callable[[], None] | None = unsubscribe

    @property
    def active(self) -> bool:
        return self._unsubscribe is not None

    def cancel(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    __call__ = cancel


class ListenerSet(Generic[T]):
    """Ordered listener registry that tolerates sync and async callbacks."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[Listener[T]] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._primed: list[Listener[T]] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def add(self, listener: Listener[T]) -> Subscription:
        if listener not in self._listeners:
            self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription(_remove)

    def clear(self) -> None:
        self._listeners.clear()

    async def notify(self, value: T) -> None:
        self._primed.clear()
        for listener in list(self._listeners):
            await self.deliver(listener, value)

    async def deliver(self, listener: Listener[T], value: T) -> None:
        try:
            result = listener(value)
            if asyncio.iscoroutine(result):
                await result
        except Exception as err:  # pragma: no cover
            _LOGGER.debug("%s listener raised error: %s", self._name, err, exc_info=True)

    def prime(self, listener: Listener[T], current: Callable[[], T]) -> asyncio.Task[None]:
        """Send ``current()`` to ``listener`` on the next loop iteration.

        Skipped when a regular notification reaches the listener first.
        """

        self._primed.append(listener)
        task = asyncio.get_running_loop().create_task(self._deliver_primed(listener, current))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver_primed(self, listener: Listener[T], current: Callable[[], T]) -> None:
        if listener not in self._primed:
            return
        self._primed.remove(listener)
        if listener in self._listeners:
            await self.deliver(listener, current())


__all__ = [
    "AuthEvent",
    "Listener",
    "ListenerSet",
    "SignedIn",
    "SignedOut",
    "Subscription",
    "TokenRefreshed",
]
