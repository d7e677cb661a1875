"""Invalidation fan-out and debouncing.

- InvalidationHub: subscribers register callbacks and receive every
  published Invalidation. A failing subscriber is logged and does not stop
  delivery to the others.
- DebounceScheduler: at most one pending timer per key; scheduling again
  cancels and replaces the pending timer (trailing-edge debounce).
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING

from damp.core.logging import get_logger
from damp.core.metrics import INVALIDATIONS_TOTAL

if TYPE_CHECKING:
    from damp.schemas.events import Invalidation

logger = get_logger(__name__)

InvalidationCallback = Callable[["Invalidation"], None]


class InvalidationHub:
    """Delivers invalidation signals to subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[InvalidationCallback] = []

    def subscribe(self, callback: InvalidationCallback) -> Callable[[], None]:
        """Register ``callback``.

        Returns:
            A function that unsubscribes it (idempotent)
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, invalidation: Invalidation) -> None:
        INVALIDATIONS_TOTAL.labels(scope=invalidation.scope.value).inc()
        logger.debug(
            f"Invalidation {invalidation.scope}:{invalidation.entity_id or '*'}",
            extra={
                "scope": invalidation.scope.value,
                "entity_id": invalidation.entity_id,
                "reason": invalidation.reason,
            },
        )
        for callback in list(self._subscribers):
            try:
                callback(invalidation)
            except Exception:
                logger.exception(
                    "Invalidation subscriber failed",
                    extra={"scope": invalidation.scope.value},
                )


class DebounceScheduler:
    """Keyed trailing-edge debouncer on the running event loop."""

    def __init__(self, delay: float) -> None:
        self._delay = delay
        self._handles: dict[str, asyncio.TimerHandle] = {}

    def schedule(self, key: str, callback: Callable[[], None], delay: float | None = None) -> None:
        """Run ``callback`` after ``delay``, replacing any pending timer for ``key``."""
        self.cancel(key)
        loop = asyncio.get_running_loop()

        def _fire() -> None:
            self._handles.pop(key, None)
            callback()

        self._handles[key] = loop.call_later(self._delay if delay is None else delay, _fire)

    def cancel(self, key: str) -> None:
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def pending(self, key: str) -> bool:
        return key in self._handles
