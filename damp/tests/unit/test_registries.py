"""Unit tests for key-value stores and registries."""

from __future__ import annotations

import json

import pytest

from damp.core.protocols import (
    HostsManagerProtocol,
    KeyValueStoreProtocol,
    ProjectRegistryProtocol,
    ServiceRegistryProtocol,
)
from damp.schemas.entities import Project
from damp.services.hosts import CommandHostsManager
from damp.services.registries import (
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    KeyValueProjectRegistry,
    KeyValueServiceRegistry,
    StoreError,
)


def _project(project_id: str = "p-1") -> Project:
    return Project(
        id=project_id,
        name="demo",
        path="/home/dev/demo",
        domain="demo.local",
        container_name="demo_devcontainer",
        volume_name="damp_project_demo",
        image="img",
    )


class TestProtocolConformance:
    def test_implementations_satisfy_protocols(self):
        store = InMemoryKeyValueStore()
        assert isinstance(store, KeyValueStoreProtocol)
        assert isinstance(KeyValueProjectRegistry(store), ProjectRegistryProtocol)
        assert isinstance(KeyValueServiceRegistry(store), ServiceRegistryProtocol)
        assert isinstance(CommandHostsManager([]), HostsManagerProtocol)


class TestJsonFileStore:
    """Tests for the JSON file store."""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonFileKeyValueStore(path)
        await store.set("service:redis", {"container_id": "abc"})

        reopened = JsonFileKeyValueStore(path)
        assert await reopened.get("service:redis") == {"container_id": "abc"}
        assert json.loads(path.read_text())["service:redis"]["container_id"] == "abc"

    @pytest.mark.asyncio
    async def test_delete_and_prefix_list(self, tmp_path):
        store = JsonFileKeyValueStore(tmp_path / "state.json")
        await store.set("project:a", 1)
        await store.set("service:b", 2)
        await store.delete("project:a")
        await store.delete("project:missing")
        assert await store.list("project:") == {}
        assert await store.list() == {"service:b": 2}

    def test_corrupt_file_raises_store_error(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StoreError):
            JsonFileKeyValueStore(path)

    def test_non_object_file_raises_store_error(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("[1, 2]")
        with pytest.raises(StoreError):
            JsonFileKeyValueStore(path)


class TestRegistries:
    @pytest.mark.asyncio
    async def test_project_round_trip(self, project_registry):
        project = _project()
        await project_registry.save_project(project)
        assert await project_registry.get_project("p-1") == project
        assert await project_registry.list_projects() == [project]
        await project_registry.delete_project("p-1")
        assert await project_registry.get_project("p-1") is None

    @pytest.mark.asyncio
    async def test_invalid_project_record_is_skipped(self, store, project_registry):
        await project_registry.save_project(_project())
        await store.set("project:broken", {"id": "broken"})
        assert [p.id for p in await project_registry.list_projects()] == ["p-1"]

    @pytest.mark.asyncio
    async def test_service_bookkeeping(self, service_registry):
        await service_registry.mark_installed("redis", "abc")
        await service_registry.mark_installed("mysql", "def")
        assert await service_registry.is_installed("redis")
        assert sorted(await service_registry.list_installed()) == ["mysql", "redis"]
        await service_registry.mark_uninstalled("redis")
        assert not await service_registry.is_installed("redis")
