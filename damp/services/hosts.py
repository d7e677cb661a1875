"""Hosts-file entries through an elevated helper command.

Editing the hosts file needs elevated privileges, so the orchestrator only
invokes a configured helper as ``<command...> add|remove <ip> <domain>`` and
reports its outcome.
"""

from __future__ import annotations

import re
import subprocess

from damp.core.async_utils import async_subprocess_run
from damp.core.logging import get_logger, sanitize_error
from damp.schemas.results import HostsResult

logger = get_logger(__name__)

_DOMAIN_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)+$")


class CommandHostsManager:
    """Runs the configured helper command for hosts-file edits."""

    def __init__(self, command: list[str], timeout: float = 30.0) -> None:
        self._command = list(command)
        self._timeout = timeout

    async def _run(self, action: str, ip: str, domain: str) -> HostsResult:
        if not self._command:
            return HostsResult(success=False, error="No hosts helper command configured")
        if not _DOMAIN_PATTERN.match(domain):
            return HostsResult(success=False, error=f"Invalid domain: {domain}")

        try:
            completed = await async_subprocess_run(
                [*self._command, action, ip, domain],
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(
                f"Hosts helper failed to {action} {domain}: {e}",
                extra={"domain": domain, "action": action},
            )
            return HostsResult(success=False, error=sanitize_error(e))

        if completed.returncode != 0:
            error = str(completed.stderr or completed.stdout or "").strip()
            logger.warning(
                f"Hosts helper exited with {completed.returncode}",
                extra={"domain": domain, "action": action},
            )
            return HostsResult(
                success=False, error=error or f"helper exited with {completed.returncode}"
            )

        logger.info(f"Hosts entry {action}: {ip} {domain}", extra={"domain": domain})
        return HostsResult(success=True)

    async def add_host_entry(self, ip: str, domain: str) -> HostsResult:
        return await self._run("add", ip, domain)

    async def remove_host_entry(self, ip: str, domain: str) -> HostsResult:
        return await self._run("remove", ip, domain)
