"""Reverse proxy synchronization.

Regenerates the edge proxy's routing configuration from the project
registry and applies it with a graceful reload. The configuration is always
rewritten in full and rendering is deterministic, so syncing an unchanged
registry produces byte-identical output.

Generated configuration:
    https://damp.local {
        tls internal
        respond "DAMP - All systems ready!"
    }

    https://demo.local {
        tls internal
        reverse_proxy demo_devcontainer:8080
    }

Callers trigger syncs fire-and-forget: a failed sync is reported as a
result and logged, never raised.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

from damp.core.exceptions import DampError, ResourceNotFoundError
from damp.core.logging import get_logger, sanitize_error
from damp.core.metrics import PROXY_SYNCS_TOTAL
from damp.schemas.results import ProxySyncResult

if TYPE_CHECKING:
    from collections.abc import Iterable

    from damp.core.config import Settings
    from damp.core.protocols import ProjectRegistryProtocol
    from damp.schemas.entities import Project
    from damp.services.container_manager import ContainerLifecycleManager

logger = get_logger(__name__)

CONFIG_HEADER = (
    "# DAMP reverse proxy configuration\n# Generated automatically; manual edits are overwritten\n"
)
BOOTSTRAP_RESPONSE = "DAMP - All systems ready!"


def render_config(
    projects: Iterable[Project],
    *,
    root_domain: str = "damp.local",
    upstream_port: int = 8080,
) -> str:
    """Render the full proxy configuration.

    Projects are emitted sorted by domain (then id) so the output does not
    depend on registry order.

    Args:
        projects: Projects to route
        root_domain: Domain of the bootstrap site
        upstream_port: Port every project container serves on

    Returns:
        The configuration text, ending with a newline
    """
    blocks = [
        f"https://{root_domain} {{\n\ttls internal\n\trespond \"{BOOTSTRAP_RESPONSE}\"\n}}\n"
    ]
    for project in sorted(projects, key=lambda p: (p.domain, p.id)):
        blocks.append(
            f"https://{project.domain} {{\n"
            f"\ttls internal\n"
            f"\treverse_proxy {project.container_name}:{upstream_port}\n"
            f"}}\n"
        )
    return CONFIG_HEADER + "\n" + "\n".join(blocks)


class ReverseProxySynchronizer:
    """Keeps the edge proxy's configuration in line with the project registry."""

    def __init__(
        self,
        container_manager: ContainerLifecycleManager,
        projects: ProjectRegistryProtocol,
        settings: Settings,
    ) -> None:
        self._containers = container_manager
        self._projects = projects
        self._settings = settings

    def render(self, projects: Iterable[Project]) -> str:
        return render_config(
            projects,
            root_domain=self._settings.proxy_root_domain,
            upstream_port=self._settings.proxy_upstream_port,
        )

    async def is_ready(self) -> bool:
        """Whether the proxy container exists and is running."""
        state = await self._containers.get_container_state(self._settings.proxy_container_name)
        return state.running

    async def _apply(self, config: str) -> None:
        proxy = self._settings.proxy_container_name
        await self._containers.put_file(proxy, self._settings.proxy_config_path, config)
        result = await self._containers.exec_in_container(
            proxy,
            [
                "caddy",
                "reload",
                "--config",
                self._settings.proxy_config_path,
                "--adapter",
                "caddyfile",
            ],
        )
        if not result.ok:
            raise DampError(
                f"Proxy reload failed (exit {result.exit_code}): {result.stderr or result.stdout}",
                error_code="PROXY_RELOAD_FAILED",
            )

    async def sync_endpoints(self) -> ProxySyncResult:
        """Rewrite the proxy configuration from the registry and reload.

        Returns:
            success=True with skipped=True when the proxy is not running;
            success=False with the error when writing or reloading failed
        """
        if not await self.is_ready():
            logger.info(
                "Reverse proxy is not running, skipping sync",
                extra={"proxy": self._settings.proxy_container_name},
            )
            PROXY_SYNCS_TOTAL.labels(outcome="skipped").inc()
            return ProxySyncResult(success=True, skipped=True)

        try:
            projects = await self._projects.list_projects()
            await self._apply(self.render(projects))
        except DampError as e:
            error = sanitize_error(e)
            logger.warning(
                f"Reverse proxy sync failed: {error}",
                extra={"proxy": self._settings.proxy_container_name, "error_code": e.error_code},
            )
            PROXY_SYNCS_TOTAL.labels(outcome="failed").inc()
            return ProxySyncResult(success=False, error=error)

        PROXY_SYNCS_TOTAL.labels(outcome="applied").inc()
        logger.info(
            f"Reverse proxy synced with {len(projects)} project(s)",
            extra={"project_count": len(projects)},
        )
        return ProxySyncResult(success=True)

    async def _wait_for_root_certificate(self) -> bool:
        proxy = self._settings.proxy_container_name
        deadline = time.monotonic() + self._settings.proxy_cert_timeout
        while True:
            try:
                await self._containers.get_file(proxy, self._settings.proxy_root_cert_path)
                return True
            except ResourceNotFoundError:
                pass
            except DampError as e:
                logger.debug(f"Root certificate not readable yet: {e}")
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self._settings.proxy_cert_poll_interval)

    async def bootstrap(self) -> ProxySyncResult:
        """Post-install hook for the proxy service.

        Waits for the proxy to run, applies a bootstrap-only configuration so
        the proxy issues its local CA, waits for the root certificate, then
        performs a full sync.
        """
        proxy = self._settings.proxy_container_name
        if not await self._containers.wait_for_running(
            proxy, timeout=self._settings.proxy_ready_timeout
        ):
            logger.warning("Reverse proxy did not start, skipping bootstrap")
            return ProxySyncResult(success=False, error="Reverse proxy is not running")

        try:
            await self._apply(self.render([]))
        except DampError as e:
            error = sanitize_error(e)
            logger.warning(f"Reverse proxy bootstrap failed: {error}")
            return ProxySyncResult(success=False, error=error)

        if await self._wait_for_root_certificate():
            logger.info("Reverse proxy root certificate is ready", extra={"proxy": proxy})
        else:
            logger.warning(
                "Reverse proxy root certificate was not generated in time",
                extra={"proxy": proxy, "timeout": self._settings.proxy_cert_timeout},
            )

        return await self.sync_endpoints()
