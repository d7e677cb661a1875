"""Shared plumbing for entity state managers.

Features:
- Idempotent initialize() guarded against concurrent callers
- Per-entity locks serializing lifecycle transitions on the same id
- Operation wrapper that stamps an operation id on log records, turns
  orchestrator errors into failed OperationResults and counts outcomes
- Tracked fire-and-forget tasks whose failures are logged as warnings
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Any, TypeVar

from damp.core.exceptions import DampError
from damp.core.logging import get_logger, get_operation_id, set_operation_id
from damp.core.metrics import LIFECYCLE_OPERATIONS_TOTAL
from damp.schemas.results import OperationResult

T = TypeVar("T")

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine

logger = get_logger(__name__)


class BaseStateManager:
    """Base class for project and service state managers."""

    name = "state"

    def __init__(self) -> None:
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._entity_locks: dict[str, asyncio.Lock] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Run ``_initialize`` once; concurrent callers wait for the first."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self._initialize()
            self._initialized = True
            logger.debug(f"{self.name} manager initialized")

    async def _initialize(self) -> None:
        """Subclass hook for one-time setup."""

    async def ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    def entity_lock(self, entity_id: str) -> asyncio.Lock:
        lock = self._entity_locks.get(entity_id)
        if lock is None:
            lock = self._entity_locks[entity_id] = asyncio.Lock()
        return lock

    async def run_operation(
        self,
        operation: str,
        entity_id: str,
        func: Callable[[], Awaitable[OperationResult[T]]],
    ) -> OperationResult[T]:
        """Run one lifecycle transition under the entity's lock.

        Orchestrator errors raised by ``func`` become failed results.
        """
        await self.ensure_initialized()
        previous_operation_id = get_operation_id()
        set_operation_id(f"{operation}:{entity_id}:{uuid.uuid4().hex[:8]}")
        try:
            async with self.entity_lock(entity_id):
                try:
                    result = await func()
                except DampError as e:
                    logger.error(
                        f"{operation} {entity_id} failed: {e}",
                        extra={"entity_id": entity_id, "error_code": e.error_code},
                    )
                    result = OperationResult.fail(e)
        finally:
            set_operation_id(previous_operation_id)

        LIFECYCLE_OPERATIONS_TOTAL.labels(
            operation=operation, outcome="success" if result.success else "failure"
        ).inc()
        return result

    def spawn_background(
        self, coro: Coroutine[Any, Any, Any], description: str
    ) -> asyncio.Task[Any]:
        """Start a fire-and-forget task; its failure is logged, never raised."""
        task = asyncio.create_task(coro, name=description)
        self._background_tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._background_tasks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.warning(
                    f"Background task '{description}' failed: {error}",
                    extra={"task": description},
                )
                return
            result = finished.result()
            if getattr(result, "success", True) is False:
                logger.warning(
                    f"Background task '{description}' reported failure: "
                    f"{getattr(result, 'error', None)}",
                    extra={"task": description},
                )

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait for all background tasks started so far."""
        while self._background_tasks:
            pending = list(self._background_tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._background_tasks.difference_update(pending)
