"""Pytest configuration and shared fixtures.

This module provides shared fixtures for all orchestrator tests:
- settings: Settings with fast timings and a temporary log/data directory
- fake_docker: In-memory engine (see damp/tests/fakes.py)
- container_manager / proxy / registries: Components wired to the fake engine

Integration tests that need a real engine live in damp/tests/integration and
skip themselves when Docker is unavailable.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import pytest
from hypothesis import HealthCheck
from hypothesis import settings as hypothesis_settings

from damp.core.config import Settings, get_settings
from damp.services.container_manager import ContainerLifecycleManager
from damp.services.invalidation import InvalidationHub
from damp.services.proxy_sync import ReverseProxySynchronizer
from damp.services.registries import (
    InMemoryKeyValueStore,
    KeyValueProjectRegistry,
    KeyValueServiceRegistry,
)
from damp.tests.fakes import FakeDockerClient, FakeHostsManager

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path

hypothesis_settings.register_profile(
    "default",
    max_examples=100,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
hypothesis_settings.register_profile("fast", max_examples=20)
hypothesis_settings.load_profile("default")


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Generator[None]:
    """Ensure no test sees another test's cached settings."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _enable_log_capture(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        log_file_path=str(tmp_path / "logs" / "damp.log"),
        data_dir=str(tmp_path / "data"),
        event_debounce_seconds=0.05,
        event_reconnect_base_delay=0.01,
        event_reconnect_max_delay=0.05,
        event_reconnect_jitter=0.0,
        engine_info_timeout=0.2,
        engine_list_timeout=0.2,
        engine_stats_timeout=0.1,
        proxy_cert_timeout=0.2,
        proxy_cert_poll_interval=0.01,
        proxy_ready_timeout=0.2,
    )


@pytest.fixture
def fake_docker() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def occupied_ports() -> set[int]:
    """Ports the fake host considers occupied; tests add to it."""
    return set()


@pytest.fixture
def container_manager(
    fake_docker: FakeDockerClient,
    settings: Settings,
    store: InMemoryKeyValueStore,
    occupied_ports: set[int],
) -> ContainerLifecycleManager:
    occupied = occupied_ports
    return ContainerLifecycleManager(
        fake_docker,  # type: ignore[arg-type]
        settings,
        settings_store=store,
        port_checker=lambda port: port not in occupied,
    )


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def project_registry(store: InMemoryKeyValueStore) -> KeyValueProjectRegistry:
    return KeyValueProjectRegistry(store)


@pytest.fixture
def service_registry(store: InMemoryKeyValueStore) -> KeyValueServiceRegistry:
    return KeyValueServiceRegistry(store)


@pytest.fixture
def proxy(
    container_manager: ContainerLifecycleManager,
    project_registry: KeyValueProjectRegistry,
    settings: Settings,
) -> ReverseProxySynchronizer:
    return ReverseProxySynchronizer(container_manager, project_registry, settings)


@pytest.fixture
def hosts() -> FakeHostsManager:
    return FakeHostsManager()


@pytest.fixture
def hub() -> InvalidationHub:
    return InvalidationHub()
