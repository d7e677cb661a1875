"""Unit tests for ServiceStateManager and the service catalog."""

from __future__ import annotations

import pytest

from damp.core.exceptions import ConfigurationError, EntityNotFoundError
from damp.core.labels import OwnerType, ResourceLabels
from damp.schemas.containers import CustomConfig
from damp.services.service_definitions import SERVICE_DEFINITIONS, get_service_definition
from damp.services.service_state_manager import ServiceStateManager

RELOAD = ["caddy", "reload", "--config", "/etc/caddy/Caddyfile", "--adapter", "caddyfile"]


@pytest.fixture
def manager(container_manager, proxy, service_registry, settings) -> ServiceStateManager:
    return ServiceStateManager(container_manager, proxy, service_registry, settings)


class TestCatalog:
    def test_service_containers_follow_naming_convention(self):
        for service_id, definition in SERVICE_DEFINITIONS.items():
            assert definition.id == service_id
            assert definition.default_config.container_name == f"damp-{service_id}"

    def test_proxy_is_required(self):
        assert get_service_definition("caddy").required

    def test_unknown_service(self):
        with pytest.raises(EntityNotFoundError):
            get_service_definition("oracle")

    def test_unknown_proxy_service_rejected(
        self, container_manager, proxy, service_registry, settings
    ):
        bad = settings.model_copy(update={"proxy_service_id": "nginx"})
        with pytest.raises(ConfigurationError) as exc_info:
            ServiceStateManager(container_manager, proxy, service_registry, bad)
        assert exc_info.value.error_code == "CONFIGURATION_ERROR"

    def test_proxy_container_must_match_catalog(
        self, container_manager, proxy, service_registry, settings
    ):
        bad = settings.model_copy(update={"proxy_container_name": "edge-proxy"})
        with pytest.raises(ConfigurationError):
            ServiceStateManager(container_manager, proxy, service_registry, bad)


class TestInstall:
    """Tests for service installation."""

    @pytest.mark.asyncio
    async def test_install_with_occupied_port(
        self, manager, fake_docker, occupied_ports, service_registry
    ):
        occupied_ports.add(3306)

        result = await manager.install_service("mysql")

        assert result.success, result.error
        assert result.data["ports"] == [[3307, 3306]]
        assert fake_docker.pulled == ["mysql:latest"]
        assert await service_registry.is_installed("mysql")
        state = await manager.get_service_state("mysql")
        assert state.running
        labels = fake_docker.containers[result.data["container_id"]]["Config"]["Labels"]
        assert ResourceLabels.from_labels(labels) == ResourceLabels(OwnerType.SERVICE, "mysql")

    @pytest.mark.asyncio
    async def test_install_with_custom_config(self, manager, fake_docker):
        result = await manager.install_service(
            "redis",
            CustomConfig(ports=[(16379, 6379)], environment_vars=["REDIS_ARGS=--save 60 1"]),
        )
        assert result.data["ports"] == [[16379, 6379]]
        env = fake_docker.containers[result.data["container_id"]]["Config"]["Env"]
        assert env[-1] == "REDIS_ARGS=--save 60 1"

    @pytest.mark.asyncio
    async def test_install_without_start(self, manager):
        result = await manager.install_service("redis", start_immediately=False)
        assert result.success
        assert not (await manager.get_service_state("redis")).running

    @pytest.mark.asyncio
    async def test_install_twice_reuses_container(self, manager, fake_docker):
        first = await manager.install_service("redis")
        second = await manager.install_service("redis")
        assert first.data["container_id"] == second.data["container_id"]
        assert len(fake_docker.containers) == 1

    @pytest.mark.asyncio
    async def test_install_unknown_service(self, manager):
        result = await manager.install_service("oracle")
        assert not result.success
        assert result.error_code == "ENTITY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_install_with_engine_down(self, manager, fake_docker):
        fake_docker.ping_ok = False
        result = await manager.install_service("redis")
        assert not result.success
        assert result.error_code == "ENGINE_UNAVAILABLE"
        assert fake_docker.containers == {}

    @pytest.mark.asyncio
    async def test_install_proxy_bootstraps(self, manager, fake_docker):
        result = await manager.install_service("caddy")

        assert result.success
        assert result.data["message"]
        assert fake_docker.exec_calls == [("damp-caddy", RELOAD), ("damp-caddy", RELOAD)]
        assert ("damp-caddy", "/etc/caddy/Caddyfile") in fake_docker.files


class TestServiceLifecycle:
    """Tests for uninstall/start/stop/restart."""

    @pytest.mark.asyncio
    async def test_uninstall_removes_container_and_volumes(
        self, manager, fake_docker, service_registry
    ):
        await manager.install_service("mysql")

        result = await manager.uninstall_service("mysql")

        assert result.success
        assert result.data["volumes"] == ["damp_mysql_data"]
        assert fake_docker.containers == {}
        assert fake_docker.volumes == {}
        assert not await service_registry.is_installed("mysql")

    @pytest.mark.asyncio
    async def test_uninstall_keeping_volumes(self, manager, fake_docker):
        await manager.install_service("mysql")
        result = await manager.uninstall_service("mysql", remove_volumes=False)
        assert result.success
        assert "damp_mysql_data" in fake_docker.volumes

    @pytest.mark.asyncio
    async def test_stop_start_restart(self, manager):
        await manager.install_service("redis")

        assert (await manager.stop_service("redis")).success
        assert not (await manager.get_service_state("redis")).running
        assert (await manager.start_service("redis")).success
        assert (await manager.get_service_state("redis")).running
        assert (await manager.restart_service("redis")).success

    @pytest.mark.asyncio
    async def test_operations_on_missing_service(self, manager):
        result = await manager.start_service("redis")
        assert not result.success
        assert result.error_code == "SERVICE_NOT_INSTALLED"

    @pytest.mark.asyncio
    async def test_starting_proxy_triggers_sync(self, manager, fake_docker):
        await manager.install_service("caddy", start_immediately=False)

        await manager.start_service("caddy")
        await manager.drain()

        assert fake_docker.exec_calls == [("damp-caddy", RELOAD)]

    @pytest.mark.asyncio
    async def test_list_services_marks_installed(self, manager):
        await manager.install_service("redis", start_immediately=False)
        services = {info.definition.id: info.installed for info in await manager.list_services()}
        assert services["redis"] is True
        assert services["mysql"] is False
        assert set(services) == set(SERVICE_DEFINITIONS)

    @pytest.mark.asyncio
    async def test_services_state_covers_catalog(self, manager):
        await manager.install_service("redis")
        await manager.install_service("mysql", start_immediately=False)

        states = await manager.get_services_state()

        assert set(states) == set(SERVICE_DEFINITIONS)
        assert states["redis"].running
        assert states["redis"].container_name == "damp-redis"
        assert states["mysql"].exists and not states["mysql"].running
        assert states["caddy"].exists is False
