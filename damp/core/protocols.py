"""Protocol definitions for the external collaborators of the orchestration core.

The core reads persisted registries and settings and calls an elevated helper
for hosts-file edits. These are reached only through the narrow structural
interfaces below, so tests and alternative hosts can plug in any object with
matching methods.

Protocol Definitions:
    - KeyValueStoreProtocol: Settings / persistence store (get, set, delete, list)
    - ProjectRegistryProtocol: Persisted projects
    - ServiceRegistryProtocol: Installed-service bookkeeping
    - HostsManagerProtocol: Hosts-file entries for project domains

See Also:
    - damp/services/registries.py - KV-backed registries and stores
    - damp/services/hosts.py - Helper-command hosts manager
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from damp.schemas.entities import Project
    from damp.schemas.results import HostsResult


@runtime_checkable
class KeyValueStoreProtocol(Protocol):
    """Minimal persistent key-value store."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list(self, prefix: str = "") -> dict[str, Any]: ...


@runtime_checkable
class ProjectRegistryProtocol(Protocol):
    """Persisted project records.

    The event bus and proxy synchronizer only read; the project state
    manager also writes.
    """

    async def list_projects(self) -> list[Project]: ...

    async def get_project(self, project_id: str) -> Project | None: ...

    async def save_project(self, project: Project) -> None: ...

    async def delete_project(self, project_id: str) -> None: ...


@runtime_checkable
class ServiceRegistryProtocol(Protocol):
    """Which catalog services the user has installed."""

    async def list_installed(self) -> list[str]: ...

    async def is_installed(self, service_id: str) -> bool: ...

    async def mark_installed(self, service_id: str, container_id: str) -> None: ...

    async def mark_uninstalled(self, service_id: str) -> None: ...


@runtime_checkable
class HostsManagerProtocol(Protocol):
    """Adds and removes hosts-file entries through an elevated helper."""

    async def add_host_entry(self, ip: str, domain: str) -> HostsResult: ...

    async def remove_host_entry(self, ip: str, domain: str) -> HostsResult: ...
