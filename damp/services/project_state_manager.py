"""Project lifecycle: registry records, volumes, containers, hosts entries and proxy sync.

A project is a per-project sandbox reachable at ``https://<name>.local``.
Creating or deleting a project triggers a background reverse proxy sync;
hosts-file edits are best-effort and never fail the operation.
"""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from damp.core.exceptions import (
    DampError,
    EntityNotFoundError,
    InvalidInputError,
    ResourceConflictError,
    ResourceInUseError,
)
from damp.core.labels import LabelKey, OwnerType, ResourceLabels
from damp.core.logging import get_logger
from damp.schemas.containers import ContainerConfig, ContainerStateSnapshot
from damp.schemas.entities import Project, ProjectCreate, ProjectUpdate
from damp.schemas.results import OperationResult
from damp.services.base_state_manager import BaseStateManager
from damp.services.port_resolution import discover_forwarded_port

if TYPE_CHECKING:
    from damp.core.config import Settings
    from damp.core.protocols import HostsManagerProtocol, ProjectRegistryProtocol
    from damp.services.container_manager import ContainerLifecycleManager
    from damp.services.proxy_sync import ReverseProxySynchronizer

logger = get_logger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def sanitize_name(name: str) -> str:
    """Lowercase, replace runs of non-alphanumerics with '-', trim dashes.

    Raises:
        InvalidInputError: If nothing usable remains
    """
    sanitized = _NON_ALNUM.sub("-", name.lower()).strip("-")
    if not sanitized:
        raise InvalidInputError(
            "Project name must contain at least one letter or digit", field="name", value=name
        )
    return sanitized


class ProjectStateManager(BaseStateManager):
    """Drives project lifecycle transitions."""

    name = "project"

    def __init__(
        self,
        container_manager: ContainerLifecycleManager,
        proxy: ReverseProxySynchronizer,
        projects: ProjectRegistryProtocol,
        hosts: HostsManagerProtocol,
        settings: Settings,
    ) -> None:
        super().__init__()
        self._containers = container_manager
        self._proxy = proxy
        self._projects = projects
        self._hosts = hosts
        self._settings = settings

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def list_projects(self) -> list[Project]:
        return await self._projects.list_projects()

    async def get_project(self, project_id: str) -> Project:
        project = await self._projects.get_project(project_id)
        if project is None:
            raise EntityNotFoundError("project", project_id)
        return project

    def _labels(self, project_id: str) -> ResourceLabels:
        return ResourceLabels(OwnerType.PROJECT, project_id)

    async def get_project_state(self, project_id: str) -> ContainerStateSnapshot:
        return await self._containers.get_container_state_by_label(
            LabelKey.OWNER_ID, project_id, OwnerType.PROJECT
        )

    async def get_projects_state(self) -> dict[str, ContainerStateSnapshot]:
        """Container state of every registered project, keyed by project id.

        Uses a single engine list call regardless of the number of projects.
        """
        projects = await self._projects.list_projects()
        states = await self._containers.get_all_container_states(
            project.container_name for project in projects
        )
        return {project.id: states[project.container_name] for project in projects}

    async def discover_project_port(self, project_id: str) -> int | None:
        """Scan the forwarded port range for the project's container."""
        project = await self.get_project(project_id)
        return await discover_forwarded_port(
            project.container_name,
            self._settings.port_scan_start,
            self._settings.port_scan_end,
            timeout=self._settings.port_check_timeout,
        )

    def build_project(self, data: ProjectCreate) -> Project:
        name = sanitize_name(data.name)
        return Project(
            id=str(uuid.uuid4()),
            name=name,
            path=data.path,
            domain=f"{name}{self._settings.project_domain_suffix}",
            container_name=f"{name}_{self._settings.project_container_suffix}",
            volume_name=f"{self._settings.project_volume_prefix}{name}",
            image=data.image or self._settings.project_image,
            forwarded_port=data.forwarded_port,
        )

    def container_config(self, project: Project) -> ContainerConfig:
        ports = [(project.forwarded_port, self._settings.proxy_upstream_port)] if (
            project.forwarded_port
        ) else []
        return ContainerConfig(
            image=project.image,
            container_name=project.container_name,
            ports=ports,
            volume_bindings=[f"{project.volume_name}:{self._settings.project_workspace_path}"],
            environment_vars=[f"DAMP_PROJECT={project.name}"],
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_project(self, data: ProjectCreate) -> OperationResult[Project]:
        """Register a project, create its volume and hosts entry, then sync the proxy."""
        try:
            name = sanitize_name(data.name)
        except InvalidInputError as e:
            return OperationResult.fail(e)

        async def _create() -> OperationResult[Project]:
            existing = await self._projects.list_projects()
            if any(project.name == name for project in existing):
                raise ResourceConflictError("project", name, f"Project '{name}' already exists")

            project = self.build_project(data)
            await self._containers.ensure_volumes_exist(
                [project.volume_name], self._labels(project.id)
            )
            hosts_added = False
            try:
                hosts_added = await self._add_hosts_entry(project)
                await self._projects.save_project(project)
            except DampError:
                if hosts_added:
                    await self._remove_hosts_entry(project)
                await self._rollback_volume(project)
                raise

            logger.info(
                f"Created project {project.name}",
                extra={"project_id": project.id, "domain": project.domain},
            )
            self.spawn_background(self._proxy.sync_endpoints(), "proxy sync after project create")
            return OperationResult.ok(project)

        return await self.run_operation("create_project", name, _create)

    async def _rollback_volume(self, project: Project) -> None:
        try:
            await self._containers.remove_volume(project.volume_name)
        except DampError as e:
            logger.warning(
                f"Could not roll back volume {project.volume_name}: {e}",
                extra={"project_id": project.id, "volume": project.volume_name},
            )

    async def _add_hosts_entry(self, project: Project) -> bool:
        """Best-effort hosts entry for the project's domain. Returns whether it was added."""
        result = await self._hosts.add_host_entry(self._settings.hosts_ip, project.domain)
        if not result.success:
            logger.warning(
                f"Could not add hosts entry for {project.domain}: {result.error}",
                extra={"project_id": project.id, "domain": project.domain},
            )
        return result.success

    async def _remove_hosts_entry(self, project: Project) -> None:
        """Best-effort removal of the project's hosts entry."""
        result = await self._hosts.remove_host_entry(self._settings.hosts_ip, project.domain)
        if not result.success:
            logger.warning(
                f"Could not remove hosts entry for {project.domain}: {result.error}",
                extra={"project_id": project.id, "domain": project.domain},
            )

    async def update_project(
        self, project_id: str, data: ProjectUpdate
    ) -> OperationResult[Project]:
        """Apply changes to a registered project.

        A domain change moves the hosts entry (best-effort) and triggers a
        background proxy sync. Image and forwarded port changes apply the next
        time the project container is created.
        """

        async def _update() -> OperationResult[Project]:
            existing = await self.get_project(project_id)
            changes = data.model_dump(exclude_unset=True, exclude_none=True)
            domain = changes.get("domain")
            if domain is not None and domain != existing.domain:
                projects = await self._projects.list_projects()
                if any(p.domain == domain and p.id != existing.id for p in projects):
                    raise ResourceConflictError(
                        "domain", domain, f"Domain '{domain}' is used by another project"
                    )

            updated = existing.model_copy(update={**changes, "updated_at": datetime.now(UTC)})
            await self._projects.save_project(updated)

            if updated.domain != existing.domain:
                await self._remove_hosts_entry(existing)
                await self._add_hosts_entry(updated)
                self.spawn_background(
                    self._proxy.sync_endpoints(), "proxy sync after project update"
                )
            logger.info(
                f"Updated project {updated.name}",
                extra={"project_id": updated.id, "fields": sorted(changes)},
            )
            return OperationResult.ok(updated)

        return await self.run_operation("update_project", project_id, _update)

    async def delete_project(
        self,
        project_id: str,
        *,
        remove_volume: bool = False,
        remove_container: bool = True,
        force: bool = False,
    ) -> OperationResult[None]:
        """Remove a project and, optionally, its container and volume.

        A volume still referenced by a container yields a failed result with
        error code RESOURCE_IN_USE unless ``force`` is set, which removes the
        project's containers first.
        """

        async def _delete() -> OperationResult[None]:
            project = await self.get_project(project_id)
            labels = self._labels(project.id)

            if remove_container or force:
                await self._containers.remove_containers_by_labels(labels)

            if remove_volume:
                try:
                    await self._containers.remove_volume(project.volume_name)
                except ResourceInUseError as e:
                    if not force:
                        return OperationResult.fail(e)
                    await self._containers.remove_containers_by_labels(labels)
                    await self._containers.remove_volume(project.volume_name)

            await self._remove_hosts_entry(project)

            await self._projects.delete_project(project.id)
            logger.info(f"Deleted project {project.name}", extra={"project_id": project.id})
            self.spawn_background(self._proxy.sync_endpoints(), "proxy sync after project delete")
            return OperationResult.ok()

        return await self.run_operation("delete_project", project_id, _delete)

    async def start_project(self, project_id: str) -> OperationResult[ContainerStateSnapshot]:
        """Create the project container if needed and start it."""

        async def _start() -> OperationResult[ContainerStateSnapshot]:
            project = await self.get_project(project_id)
            state = await self.get_project_state(project.id)
            if not state.exists:
                container_id = await self._containers.create_container(
                    self.container_config(project), labels=self._labels(project.id)
                )
            else:
                container_id = state.container_id or project.container_name
            if not state.running:
                await self._containers.start_container(container_id)
            return OperationResult.ok(await self._containers.get_container_state(container_id))

        return await self.run_operation("start_project", project_id, _start)

    async def stop_project(self, project_id: str) -> OperationResult[None]:
        async def _stop() -> OperationResult[None]:
            project = await self.get_project(project_id)
            state = await self.get_project_state(project.id)
            if state.running and state.container_id:
                await self._containers.stop_container(state.container_id)
            return OperationResult.ok()

        return await self.run_operation("stop_project", project_id, _stop)
