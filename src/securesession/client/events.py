"""
Session-ended notification.

This is the only channel through which the session core talks to the rest of
the application: subscribers are told when the authenticated session is over
and are expected to send the user back to a login surface.
"""

import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionEnded:
    """Broadcast when the session can no longer be used."""

    reason: str


SessionEndedHandler = Callable[[SessionEnded], Awaitable[None] | None]


class SessionEvents:
    """Subscription point for session-ended notifications."""

    def __init__(self) -> None:
        self._handlers: list[SessionEndedHandler] = []

    def subscribe(self, handler: SessionEndedHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    async def emit(self, event: SessionEnded) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Session-ended handler {handler!r} failed")


class ReentrancyGuard:
    """
    Busy flag for session-ending cleanup.

    The flag is raised while the guarded block runs and stays raised for
    ``cooldown`` seconds afterwards, so a late 401 from the same burst does not
    start a second cleanup.
    """

    def __init__(self, cooldown: float, clock: Callable[[], float] = time.monotonic):
        self.cooldown = cooldown
        self._clock = clock
        self._active = False
        self._release_at = 0.0

    @property
    def busy(self) -> bool:
        return self._active or self._clock() < self._release_at

    @contextmanager
    def hold(self) -> Iterator[None]:
        self._active = True
        try:
            yield
        finally:
            self._active = False
            self._release_at = self._clock() + self.cooldown
