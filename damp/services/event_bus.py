"""Engine event propagation.

Listens to the engine's container event stream and turns each relevant
event into invalidation signals for observers:

- a targeted invalidation for the matching project or service, and
- for state-changing actions (start, stop, die, kill, restart), a debounced
  bulk invalidation so a burst of events yields one bulk refresh.

The subscription is supervised: on error or stream end it reconnects with
bounded exponential backoff and jitter, forever. Every transition into
CONNECTED publishes exactly one immediate bulk invalidation, since events
may have been missed while disconnected.

Usage:
    bus = EngineEventBus(docker_client, project_registry, settings)
    unsubscribe = bus.on_invalidation(lambda inv: print(inv))
    await bus.start()
    ...
    await bus.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

from damp.core.exceptions import DampError
from damp.core.logging import get_logger, sanitize_error
from damp.core.metrics import ENGINE_EVENT_RECONNECTS_TOTAL, ENGINE_EVENTS_TOTAL
from damp.core.retry import RetryConfig, calculate_delay, record_retry
from damp.schemas.events import (
    ConnectionState,
    ConnectionStatus,
    ContainerAction,
    ContainerEvent,
    Invalidation,
    InvalidationScope,
)
from damp.services.invalidation import DebounceScheduler, InvalidationHub

if TYPE_CHECKING:
    from collections.abc import Callable

    from damp.core.config import Settings
    from damp.core.docker_client import DockerClient, EngineStream
    from damp.core.protocols import ProjectRegistryProtocol

logger = get_logger(__name__)

BULK_DEBOUNCE_KEY = "bulk"
SUBSCRIBED_ACTIONS = [action.value for action in ContainerAction]


class EngineEventBus:
    """Supervised engine event subscription that publishes invalidations."""

    def __init__(
        self,
        docker_client: DockerClient,
        projects: ProjectRegistryProtocol,
        settings: Settings,
        hub: InvalidationHub | None = None,
    ) -> None:
        self._docker = docker_client
        self._projects = projects
        self._settings = settings
        self._hub = hub or InvalidationHub()
        self._debouncer = DebounceScheduler(settings.event_debounce_seconds)
        self._retry_config = RetryConfig(
            max_retries=None,
            base_delay=settings.event_reconnect_base_delay,
            max_delay=settings.event_reconnect_max_delay,
            jitter=settings.event_reconnect_jitter,
        )
        self._status = ConnectionStatus()
        self._status_callbacks: list[Callable[[ConnectionStatus], None]] = []
        self._stream: EngineStream[dict[str, Any]] | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    @property
    def hub(self) -> InvalidationHub:
        return self._hub

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._running

    def on_invalidation(self, callback: Callable[[Invalidation], None]) -> Callable[[], None]:
        return self._hub.subscribe(callback)

    def on_connection_status_change(
        self, callback: Callable[[ConnectionStatus], None]
    ) -> Callable[[], None]:
        """Register a status observer.

        Returns:
            A function that unsubscribes it (idempotent)
        """
        self._status_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._status_callbacks:
                self._status_callbacks.remove(callback)

        return unsubscribe

    def _set_status(
        self, state: ConnectionState, *, attempt: int, last_error: str | None = None
    ) -> None:
        self._status = ConnectionStatus(state=state, attempt=attempt, last_error=last_error)
        for callback in list(self._status_callbacks):
            try:
                callback(self._status)
            except Exception:
                logger.exception("Connection status subscriber failed")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the supervised subscription. Calling it again is a no-op."""
        if self._running:
            logger.debug("Engine event bus already started")
            return
        self._running = True
        self._task = asyncio.create_task(self._supervise(), name="engine-event-bus")
        logger.info("Engine event bus started")

    async def stop(self) -> None:
        """Stop the subscription and cancel pending debounced signals."""
        self._running = False
        self._debouncer.cancel_all()
        if self._stream is not None:
            self._stream.close()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._set_status(ConnectionState.DISCONNECTED, attempt=0)
        logger.info("Engine event bus stopped")

    async def _supervise(self) -> None:
        attempt = 0
        while self._running:
            self._set_status(ConnectionState.CONNECTING, attempt=attempt)
            error: str
            try:
                self._stream = await self._docker.events(
                    filters={"type": ["container"], "event": SUBSCRIBED_ACTIONS}
                )
                attempt = 0
                self._set_status(ConnectionState.CONNECTED, attempt=0)
                logger.info("Subscribed to engine events")
                self._publish(Invalidation(scope=InvalidationScope.ALL, reason="resync"))
                async for raw in self._stream:
                    await self._handle_raw_event(raw)
                error = "event stream ended"
            except DampError as e:
                error = sanitize_error(e)
            except Exception as e:
                logger.exception("Engine event subscription failed unexpectedly")
                error = sanitize_error(e)
            finally:
                if self._stream is not None:
                    self._stream.close()
                    self._stream = None

            if not self._running:
                break
            attempt += 1
            ENGINE_EVENT_RECONNECTS_TOTAL.inc()
            self._set_status(ConnectionState.DISCONNECTED, attempt=attempt, last_error=error)
            delay = calculate_delay(attempt, self._retry_config)
            logger.warning(
                f"Engine event stream lost: {error}",
                extra={"attempt": attempt, "delay": delay},
            )
            record_retry("engine_events", attempt, delay, error)
            await asyncio.sleep(delay)

    # -------------------------------------------------------------------------
    # Event mapping
    # -------------------------------------------------------------------------

    def _publish(self, invalidation: Invalidation) -> None:
        self._hub.publish(invalidation)

    def _schedule_bulk(self) -> None:
        self._debouncer.schedule(
            BULK_DEBOUNCE_KEY,
            lambda: self._publish(
                Invalidation(scope=InvalidationScope.ALL, reason="state-change")
            ),
        )

    async def _handle_raw_event(self, raw: dict[str, Any]) -> None:
        """Handle one raw engine event. A malformed event is logged and skipped."""
        try:
            event = ContainerEvent.from_engine(raw)
            if event is None:
                return
            ENGINE_EVENTS_TOTAL.labels(action=event.action.value).inc()
            await self.handle_event(event)
        except Exception:
            logger.exception("Failed to handle engine event", extra={"raw_event": str(raw)[:200]})

    async def handle_event(self, event: ContainerEvent) -> Invalidation | None:
        """Map one container event to its entity and publish invalidations.

        Returns:
            The targeted invalidation, or None when the container belongs to
            no known project and matches no service naming convention
        """
        target = await self._match_entity(event.container_name)
        if target is None:
            logger.debug(
                f"Ignoring event for unmanaged container {event.container_name}",
                extra={"container_name": event.container_name, "action": event.action.value},
            )
            return None

        invalidation = Invalidation(
            scope=target[0], entity_id=target[1], reason=event.action.value
        )
        self._publish(invalidation)
        if event.action.changes_state:
            self._schedule_bulk()
        return invalidation

    async def _match_entity(self, container_name: str) -> tuple[InvalidationScope, str] | None:
        if not container_name:
            return None
        try:
            projects = await self._projects.list_projects()
        except DampError as e:
            logger.warning(f"Could not read project registry: {e}")
            projects = []
        for project in projects:
            if project.container_name == container_name:
                return InvalidationScope.PROJECT, project.id

        prefix = self._settings.service_container_prefix
        if container_name.startswith(prefix) and len(container_name) > len(prefix):
            return InvalidationScope.SERVICE, container_name[len(prefix) :]
        return None
