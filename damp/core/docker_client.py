"""Docker API wrapper for the orchestration core.

This module provides an async wrapper around docker-py's low-level API client.
All blocking calls run in a thread via asyncio.to_thread(), and every
docker-py / transport exception is translated into the orchestrator's error
taxonomy so nothing engine-specific leaks past this module.

Features:
- One explicit client handle, created lazily and shared by all components
- Error translation (not-found, conflict, in-use, unavailable)
- Cancellable async streams for engine events and container logs
- Archive put/get for writing configuration files into containers

Usage:
    client = DockerClient(docker_host="unix:///var/run/docker.sock")
    if await client.ping():
        containers = await client.list_containers(filters={"label": ["com.damp.managed=true"]})
    await client.close()
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.utils import parse_repository_tag
from requests.exceptions import RequestException

from damp.core.exceptions import (
    DampError,
    EngineError,
    EngineUnavailableError,
    ResourceConflictError,
    ResourceInUseError,
    ResourceNotFoundError,
)
from damp.core.logging import get_logger, sanitize_error

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from docker.api import APIClient

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Errors docker-py surfaces for engine failures; anything else is a bug and propagates.
_ENGINE_ERRORS: tuple[type[BaseException], ...] = (DockerException, RequestException, OSError)


def translate_engine_error(
    exc: BaseException,
    *,
    resource_type: str = "resource",
    resource_id: str = "",
) -> DampError:
    """Translate a docker-py or transport exception into an orchestrator error.

    Args:
        exc: The raised exception
        resource_type: Kind of resource the call targeted (container, volume, ...)
        resource_id: Identifier of the targeted resource

    Returns:
        The matching DampError subclass instance
    """
    if isinstance(exc, DampError):
        return exc
    if isinstance(exc, NotFound):
        return ResourceNotFoundError(resource_type, resource_id)
    if isinstance(exc, APIError):
        explanation = str(exc.explanation or exc)
        if exc.status_code == 409:
            if "in use" in explanation.lower():
                return ResourceInUseError(resource_type, resource_id)
            return ResourceConflictError(resource_type, resource_id, message=explanation)
        return EngineError(
            f"Engine rejected request for {resource_type} '{resource_id}': {explanation}",
            details={"status_code": exc.status_code},
        )
    if isinstance(exc, (DockerException, RequestException, OSError)):
        return EngineUnavailableError(f"Container engine is not reachable: {sanitize_error(exc)}")
    return EngineError(sanitize_error(exc))


# =============================================================================
# Streams
# =============================================================================


class _EndOfStream:
    __slots__ = ("error",)

    def __init__(self, error: DampError | None) -> None:
        self.error = error


class EngineStream(Generic[T]):
    """Async iterator over a blocking docker-py stream.

    A daemon thread pumps the blocking iterator into an asyncio.Queue.
    ``close()`` closes the underlying HTTP response, which unblocks the
    reader thread; it is idempotent and safe to call at any point.
    Stream failures are raised from ``__anext__`` as orchestrator errors.
    """

    def __init__(
        self,
        iterator: Iterator[T],
        closer: Callable[[], None],
        *,
        name: str,
        resource_type: str = "stream",
        resource_id: str = "",
    ) -> None:
        self._iterator = iterator
        self._closer = closer
        self._name = name
        self._resource_type = resource_type
        self._resource_id = resource_id
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[T | _EndOfStream] = asyncio.Queue()
        self._closed = False
        self._finished = False
        self._thread = threading.Thread(target=self._pump, name=f"damp-{name}", daemon=True)
        self._thread.start()

    def _deliver(self, item: T | _EndOfStream) -> None:
        # The loop may already be closed during interpreter shutdown
        with contextlib.suppress(RuntimeError):
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def _pump(self) -> None:
        error: DampError | None = None
        try:
            for item in self._iterator:
                if self._closed:
                    break
                self._deliver(item)
        except _ENGINE_ERRORS as e:
            if not self._closed:
                error = translate_engine_error(
                    e, resource_type=self._resource_type, resource_id=self._resource_id
                )
        except ValueError as e:
            # Closing a response mid-read can surface as "I/O operation on closed file"
            if not self._closed:
                error = EngineError(f"{self._name} stream failed: {e}")
        finally:
            self._deliver(_EndOfStream(error))

    @property
    def closed(self) -> bool:
        return self._closed or self._finished

    def __aiter__(self) -> EngineStream[T]:
        return self

    async def __anext__(self) -> T:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if isinstance(item, _EndOfStream):
            self._finished = True
            if item.error is not None and not self._closed:
                raise item.error
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        """Stop the stream. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        try:
            self._closer()
        except _ENGINE_ERRORS as e:
            logger.debug(f"Error closing {self._name} stream: {e}")
        self._queue.put_nowait(_EndOfStream(None))


# =============================================================================
# Client
# =============================================================================


class DockerClient:
    """Async wrapper around docker-py for the orchestrator.

    The underlying docker-py client is created on first use so that
    constructing the wrapper never fails when the engine is down.

    Attributes:
        _docker_host: The engine URL (e.g., unix:///var/run/docker.sock)
        _client: The underlying docker-py client instance, once created
    """

    def __init__(
        self,
        docker_host: str | None = None,
        *,
        client: docker.DockerClient | None = None,
    ) -> None:
        """Initialize the wrapper.

        Args:
            docker_host: Engine URL. If None, uses DOCKER_HOST or the standard socket.
            client: Pre-built docker-py client (used by tests)
        """
        self._docker_host = docker_host
        self._client: docker.DockerClient | None = client
        self._client_lock = threading.Lock()

    def _ensure_api(self) -> APIClient:
        with self._client_lock:
            if self._client is None:
                if self._docker_host:
                    self._client = docker.DockerClient(base_url=self._docker_host)
                else:
                    self._client = docker.from_env()
            return self._client.api

    async def _run(
        self,
        func: Callable[[APIClient], R],
        *,
        resource_type: str = "resource",
        resource_id: str = "",
    ) -> R:
        try:
            return await asyncio.to_thread(lambda: func(self._ensure_api()))
        except _ENGINE_ERRORS as e:
            raise translate_engine_error(
                e, resource_type=resource_type, resource_id=resource_id
            ) from e

    async def __aenter__(self) -> DockerClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Engine
    # -------------------------------------------------------------------------

    async def ping(self) -> bool:
        """Check connectivity to the engine.

        Returns:
            True if the engine answered, False otherwise.
        """
        try:
            await self._run(lambda api: api.ping(), resource_type="engine")
            return True
        except EngineError as e:
            logger.debug(
                f"Engine ping failed: {e}",
                extra={"docker_host": self._docker_host or "default"},
            )
            return False

    async def info(self) -> dict[str, Any]:
        return await self._run(lambda api: api.info(), resource_type="engine")

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    async def list_containers(
        self, *, all: bool = True, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """List containers as raw engine summaries (Id, Names, State, Labels...)."""
        return await self._run(
            lambda api: api.containers(all=all, filters=filters), resource_type="container"
        )

    async def inspect_container(self, container: str) -> dict[str, Any]:
        """Inspect a container by ID or name.

        Raises:
            ResourceNotFoundError: If the container does not exist
        """
        return await self._run(
            lambda api: api.inspect_container(container),
            resource_type="container",
            resource_id=container,
        )

    async def create_container(
        self,
        *,
        image: str,
        name: str,
        environment: list[str],
        port_bindings: dict[int, int],
        binds: list[str],
        labels: dict[str, str],
        restart_policy: str,
        network: str,
        healthcheck: dict[str, Any] | None = None,
    ) -> str:
        """Create a container attached to ``network``.

        Args:
            port_bindings: Container port -> host port, published on 0.0.0.0/tcp

        Returns:
            The new container ID.
        """

        def _create(api: APIClient) -> str:
            host_config = api.create_host_config(
                port_bindings={
                    f"{container_port}/tcp": ("0.0.0.0", host_port)  # noqa: S104
                    for container_port, host_port in port_bindings.items()
                },
                binds=binds or None,
                restart_policy={"Name": restart_policy} if restart_policy else None,
            )
            networking_config = api.create_networking_config(
                {network: api.create_endpoint_config()}
            )
            response = api.create_container(
                image=image,
                name=name,
                environment=environment or None,
                ports=[f"{port}/tcp" for port in port_bindings] or None,
                labels=labels,
                host_config=host_config,
                networking_config=networking_config,
                healthcheck=healthcheck,
            )
            return str(response["Id"])

        container_id = await self._run(_create, resource_type="container", resource_id=name)
        logger.info(
            f"Created container {name}",
            extra={"container_name": name, "container_id": container_id, "image": image},
        )
        return container_id

    async def start_container(self, container: str) -> None:
        await self._run(
            lambda api: api.start(container), resource_type="container", resource_id=container
        )

    async def stop_container(self, container: str, timeout: int = 10) -> None:
        await self._run(
            lambda api: api.stop(container, timeout=timeout),
            resource_type="container",
            resource_id=container,
        )

    async def restart_container(self, container: str, timeout: int = 10) -> None:
        await self._run(
            lambda api: api.restart(container, timeout=timeout),
            resource_type="container",
            resource_id=container,
        )

    async def remove_container(
        self, container: str, *, force: bool = False, volumes: bool = False
    ) -> None:
        await self._run(
            lambda api: api.remove_container(container, v=volumes, force=force),
            resource_type="container",
            resource_id=container,
        )

    async def exec_run(self, container: str, cmd: list[str]) -> tuple[int, bytes, bytes]:
        """Execute a command and collect demultiplexed output.

        Returns:
            Tuple of (exit code, stdout bytes, stderr bytes).
        """

        def _exec(api: APIClient) -> tuple[int, bytes, bytes]:
            exec_id = api.exec_create(container, cmd, stdout=True, stderr=True)["Id"]
            stdout, stderr = api.exec_start(exec_id, demux=True)
            exit_code = api.exec_inspect(exec_id).get("ExitCode")
            return (exit_code if exit_code is not None else -1, stdout or b"", stderr or b"")

        return await self._run(_exec, resource_type="container", resource_id=container)

    async def put_archive(self, container: str, path: str, data: bytes) -> None:
        """Extract a tar archive into ``path`` inside the container."""
        ok = await self._run(
            lambda api: api.put_archive(container, path, data),
            resource_type="container",
            resource_id=container,
        )
        if not ok:
            raise EngineError(f"Engine refused archive upload to {container}:{path}")

    async def get_archive(self, container: str, path: str) -> bytes:
        """Fetch ``path`` from the container as a tar archive."""

        def _get(api: APIClient) -> bytes:
            chunks, _stat = api.get_archive(container, path)
            return b"".join(chunks)

        return await self._run(_get, resource_type="file", resource_id=f"{container}:{path}")

    async def container_stats(self, container: str) -> dict[str, Any]:
        """One-shot stats sample for a container."""
        return await self._run(
            lambda api: api.stats(container, stream=False),
            resource_type="container",
            resource_id=container,
        )

    # -------------------------------------------------------------------------
    # Networks and volumes
    # -------------------------------------------------------------------------

    async def list_networks(self, names: list[str] | None = None) -> list[dict[str, Any]]:
        return await self._run(lambda api: api.networks(names=names), resource_type="network")

    async def create_network(
        self, name: str, *, driver: str = "bridge", labels: dict[str, str] | None = None
    ) -> None:
        await self._run(
            lambda api: api.create_network(name, driver=driver, labels=labels),
            resource_type="network",
            resource_id=name,
        )

    async def list_volumes(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        response = await self._run(
            lambda api: api.volumes(filters=filters), resource_type="volume"
        )
        return list(response.get("Volumes") or [])

    async def inspect_volume(self, name: str) -> dict[str, Any]:
        return await self._run(
            lambda api: api.inspect_volume(name), resource_type="volume", resource_id=name
        )

    async def create_volume(self, name: str, labels: dict[str, str] | None = None) -> None:
        await self._run(
            lambda api: api.create_volume(name=name, labels=labels),
            resource_type="volume",
            resource_id=name,
        )

    async def remove_volume(self, name: str, *, force: bool = False) -> None:
        await self._run(
            lambda api: api.remove_volume(name, force=force),
            resource_type="volume",
            resource_id=name,
        )

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    async def image_exists(self, ref: str) -> bool:
        try:
            await self._run(
                lambda api: api.inspect_image(ref), resource_type="image", resource_id=ref
            )
            return True
        except ResourceNotFoundError:
            return False

    async def pull_image(self, ref: str) -> None:
        repository, tag = parse_repository_tag(ref)
        logger.info(f"Pulling image {ref}", extra={"image": ref})
        await self._run(
            lambda api: api.pull(repository, tag=tag or "latest"),
            resource_type="image",
            resource_id=ref,
        )

    # -------------------------------------------------------------------------
    # Streams
    # -------------------------------------------------------------------------

    async def events(self, filters: dict[str, Any]) -> EngineStream[dict[str, Any]]:
        """Open the engine event stream (decoded JSON objects)."""
        raw = await self._run(
            lambda api: api.events(filters=filters, decode=True), resource_type="events"
        )
        return EngineStream(raw, raw.close, name="events", resource_type="events")

    async def logs(
        self,
        container: str,
        *,
        stdout: bool,
        stderr: bool,
        tail: int = 100,
        follow: bool = True,
    ) -> EngineStream[bytes]:
        """Open a follow-mode log stream of raw byte chunks for one output channel."""
        raw = await self._run(
            lambda api: api.logs(
                container, stdout=stdout, stderr=stderr, stream=True, follow=follow, tail=tail
            ),
            resource_type="container",
            resource_id=container,
        )
        return EngineStream(
            raw,
            raw.close,
            name=f"logs-{container}",
            resource_type="container",
            resource_id=container,
        )

    async def close(self) -> None:
        """Close the engine connection. Safe to call multiple times."""
        client, self._client = self._client, None
        if client is not None:
            with contextlib.suppress(*_ENGINE_ERRORS):
                await asyncio.to_thread(client.close)
            logger.debug("Docker client closed")
