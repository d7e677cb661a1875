"""Key-value stores and the registries built on them.

The orchestration core treats persistence as a key-value store behind
get/set/delete/list. Two stores are provided: an in-memory one (tests,
ephemeral runs) and a JSON file store. Project and service registries
serialize their records into whichever store they are given.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from damp.core.exceptions import DampError
from damp.core.logging import get_logger
from damp.core.protocols import KeyValueStoreProtocol
from damp.schemas.entities import Project

logger = get_logger(__name__)

PROJECT_KEY_PREFIX = "project:"
SERVICE_KEY_PREFIX = "service:"


class StoreError(DampError):
    default_message = "State store error"
    default_error_code = "STORE_ERROR"


class InMemoryKeyValueStore:
    """Dict-backed store; insertion order is preserved by ``list``."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Any | None:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list(self, prefix: str = "") -> dict[str, Any]:
        return {k: v for k, v in self._data.items() if k.startswith(prefix)}


class JsonFileKeyValueStore(InMemoryKeyValueStore):
    """Store persisted as one JSON document, rewritten atomically on each change."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()
        super().__init__(self._load())

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Could not read state file {self._path.name}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"State file {self._path.name} is not a JSON object")
        return data

    def _write(self, snapshot: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(snapshot, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)

    async def _flush(self) -> None:
        snapshot = dict(self._data)
        try:
            await asyncio.to_thread(self._write, snapshot)
        except OSError as e:
            raise StoreError(f"Could not write state file {self._path.name}: {e}") from e

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            await super().set(key, value)
            await self._flush()

    async def delete(self, key: str) -> None:
        async with self._lock:
            await super().delete(key)
            await self._flush()


class KeyValueProjectRegistry:
    """Projects stored as JSON documents under ``project:<id>`` keys."""

    def __init__(self, store: KeyValueStoreProtocol) -> None:
        self._store = store

    async def list_projects(self) -> list[Project]:
        records = await self._store.list(PROJECT_KEY_PREFIX)
        projects: list[Project] = []
        for key, record in records.items():
            try:
                projects.append(Project.model_validate(record))
            except ValidationError as e:
                logger.warning(f"Skipping invalid project record {key}: {e.error_count()} error(s)")
        return projects

    async def get_project(self, project_id: str) -> Project | None:
        record = await self._store.get(f"{PROJECT_KEY_PREFIX}{project_id}")
        if record is None:
            return None
        return Project.model_validate(record)

    async def save_project(self, project: Project) -> None:
        await self._store.set(f"{PROJECT_KEY_PREFIX}{project.id}", project.model_dump(mode="json"))

    async def delete_project(self, project_id: str) -> None:
        await self._store.delete(f"{PROJECT_KEY_PREFIX}{project_id}")


class KeyValueServiceRegistry:
    """Installed services stored under ``service:<id>`` keys."""

    def __init__(self, store: KeyValueStoreProtocol) -> None:
        self._store = store

    async def list_installed(self) -> list[str]:
        records = await self._store.list(SERVICE_KEY_PREFIX)
        return [key[len(SERVICE_KEY_PREFIX) :] for key in records]

    async def is_installed(self, service_id: str) -> bool:
        return await self._store.get(f"{SERVICE_KEY_PREFIX}{service_id}") is not None

    async def mark_installed(self, service_id: str, container_id: str) -> None:
        await self._store.set(
            f"{SERVICE_KEY_PREFIX}{service_id}", {"container_id": container_id}
        )

    async def mark_uninstalled(self, service_id: str) -> None:
        await self._store.delete(f"{SERVICE_KEY_PREFIX}{service_id}")
