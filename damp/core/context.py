"""Orchestration context: explicit wiring of the shared components.

One engine client is created at startup and injected into every
component; ``close()`` tears everything down. No module-level singletons.

Usage:
    context = build_context(get_settings())
    await context.event_bus.start()
    ...
    await context.close()
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from damp.core.docker_client import DockerClient
from damp.core.logging import get_logger
from damp.services.container_manager import ContainerLifecycleManager
from damp.services.event_bus import EngineEventBus
from damp.services.hosts import CommandHostsManager
from damp.services.invalidation import InvalidationHub
from damp.services.project_state_manager import ProjectStateManager
from damp.services.proxy_sync import ReverseProxySynchronizer
from damp.services.registries import (
    JsonFileKeyValueStore,
    KeyValueProjectRegistry,
    KeyValueServiceRegistry,
)
from damp.services.service_state_manager import ServiceStateManager

if TYPE_CHECKING:
    from damp.core.config import Settings
    from damp.core.protocols import (
        HostsManagerProtocol,
        KeyValueStoreProtocol,
        ProjectRegistryProtocol,
        ServiceRegistryProtocol,
    )

logger = get_logger(__name__)

STATE_FILE_NAME = "state.json"


@dataclass(slots=True)
class OrchestrationContext:
    """All long-lived orchestration components sharing one engine client."""

    settings: Settings
    docker_client: DockerClient
    store: KeyValueStoreProtocol
    project_registry: ProjectRegistryProtocol
    service_registry: ServiceRegistryProtocol
    hosts: HostsManagerProtocol
    containers: ContainerLifecycleManager
    proxy: ReverseProxySynchronizer
    hub: InvalidationHub
    event_bus: EngineEventBus
    projects: ProjectStateManager
    services: ServiceStateManager

    async def initialize(self) -> None:
        await self.projects.initialize()
        await self.services.initialize()

    async def close(self) -> None:
        """Stop the event bus, wait for background syncs and close the engine client."""
        await self.event_bus.stop()
        await self.projects.drain()
        await self.services.drain()
        await self.docker_client.close()
        logger.info("Orchestration context closed")


def build_context(
    settings: Settings,
    *,
    docker_client: DockerClient | None = None,
    store: KeyValueStoreProtocol | None = None,
    hosts: HostsManagerProtocol | None = None,
) -> OrchestrationContext:
    """Construct and wire every component.

    Args:
        settings: Orchestrator settings
        docker_client: Engine client to share (created from settings if None)
        store: Key-value store (a JSON file under ``data_dir`` if None)
        hosts: Hosts manager (the configured helper command if None)
    """
    docker_client = docker_client or DockerClient(settings.docker_host)
    if store is None:
        store = JsonFileKeyValueStore(Path(settings.data_dir) / STATE_FILE_NAME)
    hosts = hosts or CommandHostsManager(
        settings.hosts_helper_command, timeout=settings.hosts_helper_timeout
    )
    project_registry = KeyValueProjectRegistry(store)
    service_registry = KeyValueServiceRegistry(store)

    containers = ContainerLifecycleManager(docker_client, settings, settings_store=store)
    proxy = ReverseProxySynchronizer(containers, project_registry, settings)
    hub = InvalidationHub()
    event_bus = EngineEventBus(docker_client, project_registry, settings, hub)

    return OrchestrationContext(
        settings=settings,
        docker_client=docker_client,
        store=store,
        project_registry=project_registry,
        service_registry=service_registry,
        hosts=hosts,
        containers=containers,
        proxy=proxy,
        hub=hub,
        event_bus=event_bus,
        projects=ProjectStateManager(containers, proxy, project_registry, hosts, settings),
        services=ServiceStateManager(containers, proxy, service_registry, settings),
    )
