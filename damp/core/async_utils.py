"""Async utilities for bounded waits and non-blocking subprocesses.

This module provides:
- with_timeout: Await with a deadline, degrading to a default instead of raising
- async_subprocess_run: Non-blocking subprocess.run

Usage:
    from damp.core.async_utils import with_timeout

    info = await with_timeout(client.info(), 3.0, default={}, operation="engine info")
"""

from __future__ import annotations

import asyncio
import subprocess
from typing import TYPE_CHECKING, TypeVar

from damp.core.exceptions import DampError
from damp.core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable
    from pathlib import Path

logger = get_logger(__name__)

T = TypeVar("T")


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    *,
    default: T,
    operation: str,
) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    Timeouts and orchestrator errors are logged and replaced by ``default``.

    Args:
        awaitable: The call to wait for
        timeout: Deadline in seconds
        default: Value returned on timeout or failure
        operation: Name used in log messages

    Returns:
        The awaited result, or ``default``
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError:
        logger.debug(
            f"{operation} timed out after {timeout}s",
            extra={"operation": operation, "timeout": timeout},
        )
        return default
    except DampError as e:
        logger.debug(
            f"{operation} failed: {e}",
            extra={"operation": operation, "error_code": e.error_code},
        )
        return default


async def async_subprocess_run(
    args: list[str],
    *,
    capture_output: bool = False,
    text: bool = False,
    timeout: float | None = None,
    check: bool = False,
    cwd: str | Path | None = None,
) -> subprocess.CompletedProcess[str | bytes]:
    """Run a subprocess asynchronously without blocking the event loop.

    Args:
        args: Command and arguments to execute
        capture_output: If True, capture stdout and stderr
        text: If True, decode stdout/stderr as text
        timeout: Timeout in seconds (None for no timeout)
        check: If True, raise CalledProcessError on non-zero exit
        cwd: Working directory for the command

    Returns:
        CompletedProcess with returncode, stdout, stderr

    Raises:
        FileNotFoundError: If the command is not found
        subprocess.TimeoutExpired: If the command times out
        subprocess.CalledProcessError: If check=True and returncode != 0
    """

    def _run_subprocess() -> subprocess.CompletedProcess[str | bytes]:
        return subprocess.run(  # noqa: S603
            args,
            capture_output=capture_output,
            text=text,
            timeout=timeout,
            check=check,
            cwd=cwd,
        )

    return await asyncio.to_thread(_run_subprocess)
