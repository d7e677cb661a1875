"""Service lifecycle: install, uninstall, start, stop and restart catalog services.

Installing the edge proxy runs its bootstrap post-install hook, and starting
it manually triggers a background proxy sync so routes reflect the current
project registry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from damp.core.exceptions import ConfigurationError, DampError, EngineUnavailableError
from damp.core.labels import LabelKey, OwnerType, ResourceLabels
from damp.core.logging import get_logger
from damp.schemas.containers import ContainerStateSnapshot
from damp.schemas.entities import ServiceInfo
from damp.schemas.results import OperationResult
from damp.services.base_state_manager import BaseStateManager
from damp.services.service_definitions import SERVICE_DEFINITIONS, get_service_definition

if TYPE_CHECKING:
    from damp.core.config import Settings
    from damp.core.protocols import ServiceRegistryProtocol
    from damp.schemas.containers import CustomConfig
    from damp.services.container_manager import ContainerLifecycleManager
    from damp.services.proxy_sync import ReverseProxySynchronizer

logger = get_logger(__name__)


def _check_proxy_settings(settings: Settings) -> None:
    """The configured proxy must be a catalog service whose container the synchronizer targets.

    Raises:
        ConfigurationError: If the proxy service id or container name disagree with the catalog
    """
    definition = SERVICE_DEFINITIONS.get(settings.proxy_service_id)
    if definition is None:
        raise ConfigurationError(
            f"Proxy service '{settings.proxy_service_id}' is not in the service catalog",
            details={"proxy_service_id": settings.proxy_service_id},
        )
    if definition.default_config.container_name != settings.proxy_container_name:
        raise ConfigurationError(
            f"Proxy container '{settings.proxy_container_name}' does not match service "
            f"'{definition.id}' (container '{definition.default_config.container_name}')",
            details={
                "proxy_service_id": definition.id,
                "proxy_container_name": settings.proxy_container_name,
            },
        )


class ServiceStateManager(BaseStateManager):
    """Drives service lifecycle transitions."""

    name = "service"

    def __init__(
        self,
        container_manager: ContainerLifecycleManager,
        proxy: ReverseProxySynchronizer,
        services: ServiceRegistryProtocol,
        settings: Settings,
    ) -> None:
        super().__init__()
        _check_proxy_settings(settings)
        self._containers = container_manager
        self._proxy = proxy
        self._services = services
        self._settings = settings

    def _labels(self, service_id: str) -> ResourceLabels:
        return ResourceLabels(OwnerType.SERVICE, service_id)

    def _is_proxy(self, service_id: str) -> bool:
        return service_id == self._settings.proxy_service_id

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_service_state(self, service_id: str) -> ContainerStateSnapshot:
        get_service_definition(service_id)
        return await self._containers.get_container_state_by_label(
            LabelKey.OWNER_ID, service_id, OwnerType.SERVICE
        )

    async def get_services_state(self) -> dict[str, ContainerStateSnapshot]:
        """Container state of every catalog service from one engine list call."""
        states = await self._containers.get_owner_container_states(OwnerType.SERVICE)
        return {
            service_id: states.get(service_id, ContainerStateSnapshot.absent())
            for service_id in SERVICE_DEFINITIONS
        }

    async def list_services(self) -> list[ServiceInfo]:
        installed = set(await self._services.list_installed())
        return [
            ServiceInfo(definition=definition, installed=definition.id in installed)
            for definition in SERVICE_DEFINITIONS.values()
        ]

    async def _require_container(self, service_id: str) -> str:
        state = await self.get_service_state(service_id)
        if not state.exists or state.container_id is None:
            raise DampError(
                f"Service '{service_id}' is not installed",
                error_code="SERVICE_NOT_INSTALLED",
                details={"service_id": service_id},
            )
        return state.container_id

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def install_service(
        self,
        service_id: str,
        custom_config: CustomConfig | None = None,
        *,
        start_immediately: bool = True,
    ) -> OperationResult[dict[str, Any]]:
        """Pull, create and (optionally) start a catalog service.

        Returns:
            Result whose data holds ``container_id``, the actual ``ports`` and
            the post-install ``message``
        """

        async def _install() -> OperationResult[dict[str, Any]]:
            definition = get_service_definition(service_id)
            if not await self._containers.is_engine_available():
                raise EngineUnavailableError()

            existing = await self.get_service_state(service_id)
            if existing.exists:
                logger.info(
                    f"Service {service_id} is already installed",
                    extra={"service_id": service_id},
                )
                container_id = existing.container_id or definition.default_config.container_name
            else:
                config = definition.default_config.merged_with(custom_config)
                await self._containers.pull_image(config.image)
                labels = self._labels(service_id)
                container_id = await self._containers.create_container(config, labels=labels)

            await self._services.mark_installed(service_id, container_id)

            if start_immediately:
                state = await self._containers.get_container_state(container_id)
                if not state.running:
                    await self._containers.start_container(container_id)
                await self._post_install(service_id)

            state = await self._containers.get_container_state(container_id)
            logger.info(f"Installed service {service_id}", extra={"service_id": service_id})
            return OperationResult.ok(
                {
                    "container_id": container_id,
                    "ports": [list(mapping) for mapping in state.ports],
                    "message": definition.post_install_message,
                }
            )

        return await self.run_operation("install_service", service_id, _install)

    async def _post_install(self, service_id: str) -> None:
        if not self._is_proxy(service_id):
            return
        result = await self._proxy.bootstrap()
        if not result.success:
            logger.warning(
                f"Reverse proxy bootstrap failed: {result.error}",
                extra={"service_id": service_id},
            )

    async def uninstall_service(
        self, service_id: str, *, remove_volumes: bool = True
    ) -> OperationResult[dict[str, Any]]:
        """Remove the service container and, by default, its volumes."""

        async def _uninstall() -> OperationResult[dict[str, Any]]:
            definition = get_service_definition(service_id)
            labels = self._labels(service_id)
            removed_containers = await self._containers.remove_containers_by_labels(labels)

            removed_volumes: list[str] = []
            if remove_volumes:
                removed_volumes = await self._containers.remove_volumes_by_label(labels)
                # Volumes created by an engine that ignored labels are found by name
                for name in definition.default_config.named_volumes:
                    if name in removed_volumes:
                        continue
                    try:
                        await self._containers.remove_volume(name)
                        removed_volumes.append(name)
                    except DampError as e:
                        logger.warning(
                            f"Could not remove volume {name}: {e}",
                            extra={"service_id": service_id, "volume": name},
                        )

            await self._services.mark_uninstalled(service_id)
            logger.info(f"Uninstalled service {service_id}", extra={"service_id": service_id})
            return OperationResult.ok(
                {"containers": removed_containers, "volumes": removed_volumes}
            )

        return await self.run_operation("uninstall_service", service_id, _uninstall)

    async def start_service(self, service_id: str) -> OperationResult[None]:
        async def _start() -> OperationResult[None]:
            container_id = await self._require_container(service_id)
            await self._containers.start_container(container_id)
            if self._is_proxy(service_id):
                self.spawn_background(
                    self._proxy.sync_endpoints(), "proxy sync after proxy start"
                )
            return OperationResult.ok()

        return await self.run_operation("start_service", service_id, _start)

    async def stop_service(self, service_id: str) -> OperationResult[None]:
        async def _stop() -> OperationResult[None]:
            container_id = await self._require_container(service_id)
            await self._containers.stop_container(container_id)
            return OperationResult.ok()

        return await self.run_operation("stop_service", service_id, _stop)

    async def restart_service(self, service_id: str) -> OperationResult[None]:
        async def _restart() -> OperationResult[None]:
            container_id = await self._require_container(service_id)
            await self._containers.restart_container(container_id)
            return OperationResult.ok()

        return await self.run_operation("restart_service", service_id, _restart)
