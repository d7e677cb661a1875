"""Container lifecycle management on top of the engine client.

The ContainerLifecycleManager is the only component that drives the engine
for containers, volumes and networks. It owns the merge of default and
custom configs, host port allocation, ownership labels, and the absence
contract for state queries.

Failure semantics:
    - Lookups (state, find by label) never raise: absence is a value.
    - Removal treats "not found" as success; any other engine failure raises.
    - Creation failures raise CreateError with the cause chained;
      PortExhaustedError propagates unchanged.
    - Start/stop/restart/exec failures raise ContainerOperationError.
    - Removing a volume still referenced by a container raises ResourceInUseError.

Usage:
    manager = ContainerLifecycleManager(docker_client, settings)
    container_id = await manager.create_container(config, labels=ResourceLabels(...))
    await manager.start_container(container_id)
    state = await manager.get_container_state(container_id)
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import re
import tarfile
import time
from datetime import UTC, datetime, timedelta
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

from docker.utils import parse_repository_tag

from damp.core.async_utils import with_timeout
from damp.core.exceptions import (
    ContainerOperationError,
    CreateError,
    DampError,
    EngineError,
    PortExhaustedError,
    ResourceConflictError,
    ResourceNotFoundError,
)
from damp.core.labels import (
    LabelKey,
    OwnerType,
    ResourceLabels,
    label_filter,
    managed_filter,
)
from damp.core.logging import get_logger
from damp.schemas.containers import (
    ContainerInfo,
    ContainerStateSnapshot,
    ExecResult,
    HealthStatus,
    LogLine,
    LogStreamKind,
    ManagedContainers,
    PortMapping,
    ResourceStats,
)
from damp.services.port_resolution import check_port_available, resolve_available_ports

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from damp.core.config import Settings
    from damp.core.docker_client import DockerClient, EngineStream
    from damp.core.protocols import KeyValueStoreProtocol
    from damp.schemas.containers import ContainerConfig, CustomConfig

logger = get_logger(__name__)

IMAGE_PULL_KEY_PREFIX = "image_last_pull:"
_TERMINAL_STATES = frozenset({"exited", "dead"})


# =============================================================================
# Helpers
# =============================================================================


def _container_info(raw: dict[str, Any]) -> ContainerInfo:
    names = raw.get("Names") or []
    name = names[0].lstrip("/") if names else ""
    return ContainerInfo(
        id=raw.get("Id", ""),
        name=name,
        image=raw.get("Image"),
        state=raw.get("State"),
        status=raw.get("Status"),
        labels=raw.get("Labels") or {},
    )


def _published_ports(raw_ports: dict[str, Any] | None) -> list[PortMapping]:
    """Flatten NetworkSettings.Ports into unique (host, container) pairs."""
    mappings: list[PortMapping] = []
    for key, bindings in (raw_ports or {}).items():
        if not bindings:
            continue
        container_port = int(key.split("/", 1)[0])
        for binding in bindings:
            host_port = binding.get("HostPort")
            if not host_port:
                continue
            mapping = PortMapping(int(host_port), container_port)
            # IPv4 and IPv6 bindings of the same port are reported separately
            if mapping not in mappings:
                mappings.append(mapping)
    return sorted(mappings, key=lambda m: m.container_port)


_SUMMARY_HEALTH = re.compile(r"\((healthy|unhealthy|health: starting)\)")


def _summary_health(status: str | None) -> HealthStatus:
    """Health from a list summary's Status text, e.g. ``Up 2 minutes (healthy)``."""
    match = _SUMMARY_HEALTH.search(status or "")
    if match is None:
        return HealthStatus.NONE
    if match.group(1) == "health: starting":
        return HealthStatus.STARTING
    return HealthStatus(match.group(1))


def _summary_ports(raw_ports: list[dict[str, Any]] | None) -> list[PortMapping]:
    """Published ports of a list summary as unique (host, container) pairs."""
    mappings: list[PortMapping] = []
    for binding in raw_ports or []:
        public, private = binding.get("PublicPort"), binding.get("PrivatePort")
        if not public or not private:
            continue
        mapping = PortMapping(int(public), int(private))
        if mapping not in mappings:
            mappings.append(mapping)
    return sorted(mappings, key=lambda m: m.container_port)


def _summary_state(raw: dict[str, Any]) -> ContainerStateSnapshot:
    info = _container_info(raw)
    return ContainerStateSnapshot(
        exists=True,
        running=info.running,
        container_id=info.id or None,
        container_name=info.name or None,
        state=info.state,
        ports=_summary_ports(raw.get("Ports")),
        health_status=_summary_health(info.status),
    )


def calculate_cpu_percent(stats: dict[str, Any]) -> float:
    """CPU usage of one stats sample, as a percentage of one CPU times online CPUs."""
    cpu_stats = stats.get("cpu_stats") or {}
    precpu_stats = stats.get("precpu_stats") or {}
    cpu_delta = (cpu_stats.get("cpu_usage") or {}).get("total_usage", 0) - (
        precpu_stats.get("cpu_usage") or {}
    ).get("total_usage", 0)
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get("system_cpu_usage", 0)
    online_cpus = cpu_stats.get("online_cpus") or len(
        (cpu_stats.get("cpu_usage") or {}).get("percpu_usage") or []
    ) or 1
    if cpu_delta <= 0 or system_delta <= 0:
        return 0.0
    return (cpu_delta / system_delta) * online_cpus * 100.0


def _is_floating_tag(ref: str) -> bool:
    _repository, tag = parse_repository_tag(ref)
    return tag in (None, "", "latest")


# =============================================================================
# Log streams
# =============================================================================


class _StreamDone:
    __slots__ = ()


_DONE = _StreamDone()


class LogStream:
    """Merged, line-split stdout/stderr of one container.

    Iterate with ``async for``. ``close()`` stops both underlying engine
    streams; it is idempotent and may be called at any point, including
    before the first line arrives.
    """

    def __init__(self, stdout: EngineStream[bytes], stderr: EngineStream[bytes]) -> None:
        self._streams = (stdout, stderr)
        self._queue: asyncio.Queue[LogLine | _StreamDone] = asyncio.Queue()
        self._remaining = 2
        self._closed = False
        self._tasks = [
            asyncio.create_task(self._pump(stdout, LogStreamKind.STDOUT)),
            asyncio.create_task(self._pump(stderr, LogStreamKind.STDERR)),
        ]

    async def _pump(self, stream: EngineStream[bytes], kind: LogStreamKind) -> None:
        buffer = b""
        try:
            async for chunk in stream:
                buffer += chunk
                *lines, buffer = buffer.split(b"\n")
                for line in lines:
                    self._emit(kind, line)
            if buffer:
                self._emit(kind, buffer)
        except EngineError as e:
            logger.debug(f"Log stream ended with error: {e}", extra={"stream": kind.value})
        finally:
            self._queue.put_nowait(_DONE)

    def _emit(self, kind: LogStreamKind, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip("\r")
        if text.strip():
            self._queue.put_nowait(LogLine(stream=kind, text=text))

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> LogStream:
        return self

    async def __anext__(self) -> LogLine:
        while True:
            if self._closed or self._remaining == 0:
                raise StopAsyncIteration
            item = await self._queue.get()
            if isinstance(item, _StreamDone):
                self._remaining -= 1
                continue
            return item

    def close(self) -> None:
        """Stop streaming. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        for stream in self._streams:
            stream.close()
        # Wake a consumer blocked on the queue
        self._queue.put_nowait(_DONE)


# =============================================================================
# Manager
# =============================================================================


class ContainerLifecycleManager:
    """Idempotent container, volume and network operations.

    Attributes:
        _docker: Shared engine client
        _settings: Orchestrator settings
        _settings_store: Optional store for image pull timestamps
        _allocation_lock: Serializes port resolution and creation within the process
    """

    def __init__(
        self,
        docker_client: DockerClient,
        settings: Settings,
        *,
        settings_store: KeyValueStoreProtocol | None = None,
        port_checker: Callable[[int], bool] = check_port_available,
    ) -> None:
        self._docker = docker_client
        self._settings = settings
        self._settings_store = settings_store
        self._port_checker = port_checker
        self._allocation_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Engine
    # -------------------------------------------------------------------------

    async def is_engine_available(self) -> bool:
        return await with_timeout(
            self._docker.ping(),
            self._settings.engine_ping_timeout,
            default=False,
            operation="engine ping",
        )

    # -------------------------------------------------------------------------
    # Networks and volumes
    # -------------------------------------------------------------------------

    async def ensure_network_exists(self, name: str | None = None) -> None:
        """Create the shared bridge network if it does not exist yet."""
        name = name or self._settings.network_name
        networks = await self._docker.list_networks(names=[name])
        # The engine's name filter matches substrings
        if any(network.get("Name") == name for network in networks):
            return
        try:
            await self._docker.create_network(
                name, driver="bridge", labels={LabelKey.MANAGED.value: "true"}
            )
            logger.info(f"Created network {name}", extra={"network": name})
        except ResourceConflictError:
            logger.debug(f"Network {name} was created concurrently", extra={"network": name})

    async def ensure_volumes_exist(
        self,
        names: list[str],
        labels: ResourceLabels | Mapping[str, ResourceLabels] | None = None,
    ) -> None:
        """Create each named volume that does not exist yet.

        Args:
            names: Volume names
            labels: Labels applied to every new volume, or a per-volume mapping
        """
        for name in names:
            try:
                await self._docker.inspect_volume(name)
                continue
            except ResourceNotFoundError:
                pass
            if isinstance(labels, ResourceLabels):
                volume_labels: ResourceLabels | None = labels
            elif labels is not None:
                volume_labels = labels.get(name)
            else:
                volume_labels = None
            try:
                await self._docker.create_volume(
                    name,
                    labels=volume_labels.to_labels() if volume_labels else None,
                )
                logger.info(f"Created volume {name}", extra={"volume": name})
            except ResourceConflictError:
                logger.debug(f"Volume {name} was created concurrently", extra={"volume": name})

    async def remove_volume(self, name: str) -> None:
        """Remove a volume.

        Raises:
            ResourceInUseError: If a container still references the volume
            EngineError: For other engine failures
        """
        try:
            await self._docker.remove_volume(name)
            logger.info(f"Removed volume {name}", extra={"volume": name})
        except ResourceNotFoundError:
            logger.debug(f"Volume {name} already absent", extra={"volume": name})

    async def remove_volumes_by_label(self, labels: ResourceLabels) -> list[str]:
        """Best-effort removal of every volume owned by ``labels``.

        Returns:
            Names of the volumes that were removed
        """
        volumes = await self._docker.list_volumes(filters={"label": labels.to_filters()})
        removed: list[str] = []
        for volume in volumes:
            name = volume.get("Name", "")
            try:
                await self.remove_volume(name)
                removed.append(name)
            except EngineError as e:
                logger.warning(
                    f"Could not remove volume {name}: {e}",
                    extra={"volume": name, "error_code": e.error_code},
                )
        return removed

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    async def _image_is_stale(self, ref: str) -> bool:
        if self._settings_store is None or self._settings.image_refresh_days <= 0:
            return False
        if not _is_floating_tag(ref):
            return False
        last_pull = await self._settings_store.get(f"{IMAGE_PULL_KEY_PREFIX}{ref}")
        if last_pull is None:
            return True
        try:
            pulled_at = datetime.fromisoformat(str(last_pull))
        except ValueError:
            return True
        return datetime.now(UTC) - pulled_at > timedelta(days=self._settings.image_refresh_days)

    async def pull_image(self, ref: str, *, force: bool = False) -> bool:
        """Pull ``ref`` when missing, stale, or forced.

        Floating tags (``latest`` or untagged) are refreshed after
        ``image_refresh_days``. A failed refresh of an image that exists
        locally is logged and the local copy is used.

        Returns:
            True if the image was pulled
        """
        exists = await self._docker.image_exists(ref)
        if exists and not force and not await self._image_is_stale(ref):
            return False
        try:
            await self._docker.pull_image(ref)
        except EngineError as e:
            if not exists:
                raise
            logger.warning(
                f"Could not refresh image {ref}, using local copy: {e}",
                extra={"image": ref},
            )
            return False
        if self._settings_store is not None:
            await self._settings_store.set(
                f"{IMAGE_PULL_KEY_PREFIX}{ref}", datetime.now(UTC).isoformat()
            )
        return True

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    def _allocation_guard(self) -> contextlib.AbstractAsyncContextManager[Any]:
        if self._settings.serialize_port_allocation:
            return self._allocation_lock
        return contextlib.nullcontext()

    async def create_container(
        self,
        config: ContainerConfig,
        labels: ResourceLabels | None = None,
        custom: CustomConfig | None = None,
        volume_labels: ResourceLabels | Mapping[str, ResourceLabels] | None = None,
    ) -> str:
        """Create a container from a config merged with optional overrides.

        Desired host ports are resolved to free host ports, the shared network
        and any named volumes are ensured, and the container is attached to
        the network with restart policy, healthcheck and labels applied.

        Args:
            config: Default container config
            labels: Ownership labels for the container (and its volumes by default)
            custom: Overrides merged onto ``config``
            volume_labels: Labels for created volumes, overriding ``labels``

        Returns:
            The new container ID

        Raises:
            PortExhaustedError: If a desired port could not be placed
            CreateError: For any other failure, with the cause chained
        """
        merged = config.merged_with(custom)
        async with self._allocation_guard():
            port_map = await resolve_available_ports(
                [mapping.host_port for mapping in merged.ports],
                pool=self._settings.port_pool,
                max_port=self._settings.port_max,
                checker=self._port_checker,
            )
            bindings = {
                mapping.container_port: port_map[mapping.host_port] for mapping in merged.ports
            }
            try:
                await self.ensure_network_exists()
                if merged.named_volumes:
                    await self.ensure_volumes_exist(merged.named_volumes, volume_labels or labels)
                return await self._docker.create_container(
                    image=merged.image,
                    name=merged.container_name,
                    environment=list(merged.environment_vars),
                    port_bindings=bindings,
                    binds=list(merged.volume_bindings),
                    labels=labels.to_labels() if labels else {},
                    restart_policy=merged.restart_policy,
                    network=self._settings.network_name,
                    healthcheck=merged.healthcheck.to_engine() if merged.healthcheck else None,
                )
            except PortExhaustedError:
                raise
            except DampError as e:
                logger.error(
                    f"Failed to create container {merged.container_name}: {e}",
                    extra={"container_name": merged.container_name, "error_code": e.error_code},
                )
                raise CreateError(merged.container_name, e) from e

    async def start_container(self, container: str) -> None:
        try:
            await self._docker.start_container(container)
        except EngineError as e:
            raise ContainerOperationError("start", container, e) from e
        logger.info(f"Started container {container}", extra={"container": container})

    async def stop_container(self, container: str, timeout: int | None = None) -> None:
        timeout = self._settings.container_stop_timeout if timeout is None else timeout
        try:
            await self._docker.stop_container(container, timeout=timeout)
        except EngineError as e:
            raise ContainerOperationError("stop", container, e) from e
        logger.info(
            f"Stopped container {container}", extra={"container": container, "timeout": timeout}
        )

    async def restart_container(self, container: str, timeout: int | None = None) -> None:
        timeout = self._settings.container_stop_timeout if timeout is None else timeout
        try:
            await self._docker.restart_container(container, timeout=timeout)
        except EngineError as e:
            raise ContainerOperationError("restart", container, e) from e
        logger.info(f"Restarted container {container}", extra={"container": container})

    async def remove_container(self, container: str, *, remove_volumes: bool = False) -> None:
        """Stop (best effort) and force-remove a container. Absent counts as removed.

        Raises:
            ContainerOperationError: If the engine is unreachable or refuses the removal
        """
        try:
            data = await self._docker.inspect_container(container)
        except ResourceNotFoundError:
            logger.debug(f"Container {container} already absent", extra={"container": container})
            return
        except EngineError as e:
            raise ContainerOperationError("remove", container, e) from e
        if (data.get("State") or {}).get("Running"):
            try:
                await self._docker.stop_container(
                    container, timeout=self._settings.container_stop_timeout
                )
            except EngineError as e:
                logger.debug(
                    f"Graceful stop of {container} failed, forcing removal: {e}",
                    extra={"container": container},
                )
        try:
            await self._docker.remove_container(container, force=True, volumes=remove_volumes)
        except ResourceNotFoundError:
            return
        except EngineError as e:
            raise ContainerOperationError("remove", container, e) from e
        logger.info(f"Removed container {container}", extra={"container": container})

    async def remove_containers_by_labels(self, labels: ResourceLabels) -> list[str]:
        """Remove every container owned by ``labels``.

        Returns:
            IDs of the removed containers
        """
        raw = await self._docker.list_containers(all=True, filters={"label": labels.to_filters()})
        removed: list[str] = []
        for container in raw:
            await self.remove_container(container["Id"])
            removed.append(container["Id"])
        return removed

    async def get_container_state(self, container: str) -> ContainerStateSnapshot:
        """Snapshot of a container by ID or name.

        Never raises: a missing container, or an engine failure, yields
        ``ContainerStateSnapshot.absent()``.
        """
        try:
            data = await self._docker.inspect_container(container)
        except ResourceNotFoundError:
            return ContainerStateSnapshot.absent()
        except EngineError as e:
            logger.warning(
                f"Could not inspect container {container}: {e}",
                extra={"container": container, "error_code": e.error_code},
            )
            return ContainerStateSnapshot.absent()

        state = data.get("State") or {}
        health_raw = (state.get("Health") or {}).get("Status")
        try:
            health = HealthStatus(health_raw) if health_raw else HealthStatus.NONE
        except ValueError:
            health = HealthStatus.NONE
        return ContainerStateSnapshot(
            exists=True,
            running=bool(state.get("Running")),
            container_id=data.get("Id"),
            container_name=(data.get("Name") or "").lstrip("/") or None,
            state=state.get("Status"),
            ports=_published_ports((data.get("NetworkSettings") or {}).get("Ports")),
            health_status=health,
            environment_vars=list((data.get("Config") or {}).get("Env") or []),
        )

    async def find_container_by_label(
        self,
        key: str,
        value: str,
        owner_type: OwnerType | str | None = None,
    ) -> ContainerInfo | None:
        """First managed container whose label ``key`` equals ``value``.

        ``key`` may be a full label key or a short alias such as ``ownerId``.
        """
        try:
            raw = await self._docker.list_containers(
                all=True, filters={"label": label_filter(key, value, owner_type)}
            )
        except EngineError as e:
            logger.warning(
                f"Container lookup by label {key}={value} failed: {e}",
                extra={"label": key, "value": value},
            )
            return None
        return _container_info(raw[0]) if raw else None

    async def get_container_state_by_label(
        self,
        key: str,
        value: str,
        owner_type: OwnerType | str | None = None,
    ) -> ContainerStateSnapshot:
        info = await self.find_container_by_label(key, value, owner_type)
        if info is None:
            return ContainerStateSnapshot.absent()
        return await self.get_container_state(info.id)

    async def get_all_container_states(
        self, names: Iterable[str]
    ) -> dict[str, ContainerStateSnapshot]:
        """Snapshots of many containers, by name, from a single list call.

        Names with no container, or every name when the engine call fails,
        map to ``ContainerStateSnapshot.absent()``. List summaries carry no
        environment, so ``environment_vars`` is empty.
        """
        states = {name: ContainerStateSnapshot.absent() for name in names}
        if not states:
            return states
        try:
            raw = await self._docker.list_containers(all=True)
        except EngineError as e:
            logger.warning(
                f"Bulk container state lookup failed: {e}",
                extra={"count": len(states), "error_code": e.error_code},
            )
            return states
        for item in raw:
            name = _container_info(item).name
            if name in states:
                states[name] = _summary_state(item)
        return states

    async def get_owner_container_states(
        self, owner_type: OwnerType
    ) -> dict[str, ContainerStateSnapshot]:
        """Snapshots of every container owned by ``owner_type``, keyed by owner ID.

        One list call; owners without a container are simply missing from the
        result, and an engine failure yields an empty mapping.
        """
        try:
            raw = await self._docker.list_containers(
                all=True, filters={"label": label_filter(LabelKey.OWNER_TYPE, owner_type.value)}
            )
        except EngineError as e:
            logger.warning(
                f"Container state lookup for {owner_type.value} owners failed: {e}",
                extra={"owner_type": owner_type.value, "error_code": e.error_code},
            )
            return {}
        states: dict[str, ContainerStateSnapshot] = {}
        for item in raw:
            owner = ResourceLabels.from_labels(item.get("Labels"))
            if owner is None or owner.owner_type is not owner_type:
                continue
            states.setdefault(owner.owner_id, _summary_state(item))
        return states

    async def get_container_host_port(self, container: str, container_port: int) -> int | None:
        state = await self.get_container_state(container)
        for mapping in state.ports:
            if mapping.container_port == container_port:
                return mapping.host_port
        return None

    async def list_managed_containers(self) -> ManagedContainers:
        """All managed containers grouped by owner type."""
        raw = await self._docker.list_containers(all=True, filters={"label": managed_filter()})
        grouped: dict[OwnerType, list[ContainerInfo]] = {}
        for item in raw:
            info = _container_info(item)
            owner = ResourceLabels.from_labels(info.labels)
            if owner is None:
                continue
            grouped.setdefault(owner.owner_type, []).append(info)
        return ManagedContainers(by_owner=grouped)

    async def wait_for_running(
        self, container: str, timeout: float = 30.0, interval: float = 0.5
    ) -> bool:
        """Poll until the container runs.

        Returns:
            True once running; False on timeout or when the container exited
        """
        deadline = time.monotonic() + timeout
        while True:
            state = await self.get_container_state(container)
            if state.running:
                return True
            if state.exists and state.state in _TERMINAL_STATES:
                logger.warning(
                    f"Container {container} stopped while waiting for it to run",
                    extra={"container": container, "state": state.state},
                )
                return False
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(interval)

    # -------------------------------------------------------------------------
    # Exec, files and logs
    # -------------------------------------------------------------------------

    async def exec_in_container(
        self, container: str, argv: list[str], *, timeout: float | None = None
    ) -> ExecResult:
        """Run a command and return its exit code and trimmed output.

        Args:
            container: Container ID or name
            argv: Command and arguments
            timeout: Deadline in seconds; defaults to ``exec_timeout``

        Raises:
            ContainerOperationError: If the command could not be run or timed out
        """
        timeout = self._settings.exec_timeout if timeout is None else timeout
        try:
            exit_code, stdout, stderr = await asyncio.wait_for(
                self._docker.exec_run(container, argv), timeout=timeout
            )
        except (TimeoutError, EngineError) as e:
            raise ContainerOperationError("exec in", container, e) from e
        result = ExecResult(
            exit_code=exit_code,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )
        logger.debug(
            f"Executed {argv[0] if argv else ''} in {container}",
            extra={"container": container, "exit_code": result.exit_code},
        )
        return result

    async def put_file(self, container: str, path: str, content: str | bytes) -> None:
        """Write a single file inside the container, replacing any existing one."""
        data = content.encode("utf-8") if isinstance(content, str) else content
        target = PurePosixPath(path)
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as archive:
            info = tarfile.TarInfo(name=target.name)
            info.size = len(data)
            info.mtime = int(time.time())
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))
        try:
            await self._docker.put_archive(container, str(target.parent), buffer.getvalue())
        except EngineError as e:
            raise ContainerOperationError("write file to", container, e) from e

    async def get_file(self, container: str, path: str) -> bytes:
        """Read a single file from the container.

        Raises:
            ResourceNotFoundError: If the file does not exist
            ContainerOperationError: For other failures
        """
        try:
            archive_bytes = await self._docker.get_archive(container, path)
        except ResourceNotFoundError:
            raise
        except EngineError as e:
            raise ContainerOperationError("read file from", container, e) from e
        with tarfile.open(fileobj=io.BytesIO(archive_bytes), mode="r") as archive:
            for member in archive.getmembers():
                if member.isfile():
                    extracted = archive.extractfile(member)
                    if extracted is not None:
                        return extracted.read()
        raise ResourceNotFoundError("file", f"{container}:{path}")

    async def open_log_stream(self, container: str, tail: int = 100) -> LogStream:
        """Follow the container's stdout and stderr as a cancellable async iterator."""
        stdout = await self._docker.logs(container, stdout=True, stderr=False, tail=tail)
        try:
            stderr = await self._docker.logs(container, stdout=False, stderr=True, tail=tail)
        except EngineError:
            stdout.close()
            raise
        return LogStream(stdout, stderr)

    async def stream_logs(
        self,
        container: str,
        on_line: Callable[[LogLine], None],
        tail: int = 100,
    ) -> Callable[[], None]:
        """Deliver log lines to ``on_line`` until the returned stop function is called.

        The stop function is idempotent.
        """
        stream = await self.open_log_stream(container, tail=tail)

        async def _consume() -> None:
            async for line in stream:
                try:
                    on_line(line)
                except Exception:
                    logger.exception(
                        "Log line callback failed", extra={"container": container}
                    )

        task = asyncio.create_task(_consume(), name=f"logs-{container}")

        def stop() -> None:
            stream.close()
            task.cancel()

        return stop

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    async def get_managed_resource_stats(self) -> ResourceStats:
        """Aggregate CPU and memory usage over running managed containers.

        The info, list and per-container stats calls each have their own
        timeout; a timeout or failure in any of them degrades that figure to
        zero instead of failing the whole aggregation.
        """
        info = await with_timeout(
            self._docker.info(),
            self._settings.engine_info_timeout,
            default={},
            operation="engine info",
        )
        containers = await with_timeout(
            self._docker.list_containers(all=False, filters={"label": managed_filter()}),
            self._settings.engine_list_timeout,
            default=[],
            operation="managed container list",
        )
        samples = await asyncio.gather(
            *(
                with_timeout(
                    self._docker.container_stats(container["Id"]),
                    self._settings.engine_stats_timeout,
                    default=None,
                    operation=f"stats {container['Id'][:12]}",
                )
                for container in containers
            )
        )

        cpu_percent = 0.0
        mem_used = 0
        for sample in samples:
            if not sample:
                continue
            cpu_percent += calculate_cpu_percent(sample)
            mem_used += int((sample.get("memory_stats") or {}).get("usage") or 0)

        return ResourceStats(
            cpus=int(info.get("NCPU") or 0),
            cpu_usage_percent=round(cpu_percent, 2),
            mem_total=int(info.get("MemTotal") or 0),
            mem_used=mem_used,
            container_count=len(containers),
        )
