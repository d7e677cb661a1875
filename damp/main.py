"""Orchestrator entry point.

Sets up logging, wires the orchestration context, supervises the engine
event stream and runs until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal

from damp.core.config import get_settings
from damp.core.context import build_context
from damp.core.logging import get_logger, setup_logging
from damp.schemas.events import ConnectionStatus, Invalidation

logger = get_logger(__name__)


def _log_invalidation(invalidation: Invalidation) -> None:
    logger.info(
        f"State changed: {invalidation.scope} {invalidation.entity_id or '*'}",
        extra={
            "scope": invalidation.scope.value,
            "entity_id": invalidation.entity_id,
            "reason": invalidation.reason,
        },
    )


def _log_connection_status(status: ConnectionStatus) -> None:
    logger.info(
        f"Engine event stream {status.state}",
        extra={"attempt": status.attempt, "last_error": status.last_error},
    )


async def run() -> None:
    settings = get_settings()
    context = build_context(settings)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not supported on every platform's event loop
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    context.event_bus.on_invalidation(_log_invalidation)
    context.event_bus.on_connection_status_change(_log_connection_status)

    try:
        await context.initialize()
        if not await context.containers.is_engine_available():
            logger.warning("Container engine is not reachable; waiting for it to come up")
        await context.event_bus.start()
        logger.info(f"{settings.app_name} {settings.app_version} running")
        await stop_event.wait()
    finally:
        logger.info("Shutting down")
        await context.close()


def main() -> None:
    """Console script entry point."""
    setup_logging()
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run())


if __name__ == "__main__":
    main()
