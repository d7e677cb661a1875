"""Host port resolution for container creation.

Two responsibilities:

1. Proactive: map every desired host port of a container config to a port
   that is actually free on the host, with no two mappings in one call
   sharing a host port.
2. Reactive: when the engine has silently remapped a forwarded port, find
   the container again by probing a port range for an identity header.

Usage:
    ports = await resolve_available_ports([3306, 8080])
    # {3306: 3307, 8080: 8080} when 3306 was already bound

    port = await discover_forwarded_port("demo_devcontainer", 8443, 8462)
"""

from __future__ import annotations

import asyncio
import socket
from typing import TYPE_CHECKING

import httpx

from damp.core.exceptions import PortExhaustedError
from damp.core.logging import get_logger
from damp.core.metrics import PORT_REASSIGNMENTS_TOTAL

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

logger = get_logger(__name__)

IDENTITY_HEADER = "x-container-name"
MAX_PORT = 65535


def check_port_available(port: int) -> bool:
    """Check if a port is available for publishing on the host.

    Tries to bind the wildcard IPv4 address (what the engine binds for
    published ports) and also treats a listener on IPv4 or IPv6 localhost
    as occupying the port.

    Args:
        port: Port number to check

    Returns:
        True if the port can be bound, False if in use
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind(("0.0.0.0", port))  # noqa: S104
    except OSError:
        return False

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(0.5)
        if s.connect_ex(("127.0.0.1", port)) == 0:
            return False
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_STREAM) as s:
            s.settimeout(0.5)
            if s.connect_ex(("::1", port)) == 0:
                return False
    except OSError:
        pass  # IPv6 not available
    return True


async def resolve_available_ports(
    desired: Iterable[int],
    *,
    pool: range | None = None,
    max_port: int = MAX_PORT,
    checker: Callable[[int], bool] = check_port_available,
) -> dict[int, int]:
    """Map each desired host port to a free host port.

    Free desired ports keep their value. Occupied ones are reassigned by
    scanning upward from ``desired + 1`` (or through ``pool`` when given),
    skipping ports already claimed in this call. The claimed set lives only
    for the duration of the call.

    Args:
        desired: Desired host ports (duplicates are collapsed)
        pool: Optional fallback range scanned instead of scanning upward
        max_port: Highest port considered when scanning upward
        checker: Host availability check, run in a worker thread

    Returns:
        Mapping of desired port to actual port

    Raises:
        PortExhaustedError: If no free port remains for some desired port
    """
    ports = sorted(set(desired))
    claimed: set[int] = set()
    result: dict[int, int] = {}

    availability = await asyncio.gather(*(asyncio.to_thread(checker, port) for port in ports))
    occupied: list[int] = []
    for port, available in zip(ports, availability, strict=True):
        if available:
            result[port] = port
            claimed.add(port)
        else:
            occupied.append(port)

    for port in occupied:
        candidates = pool if pool is not None else range(port + 1, max_port + 1)
        actual: int | None = None
        for candidate in candidates:
            if candidate in claimed:
                continue
            if await asyncio.to_thread(checker, candidate):
                actual = candidate
                break
        if actual is None:
            logger.warning(
                f"No free host port for desired port {port}",
                extra={"desired_port": port, "pool": str(pool) if pool else None},
            )
            raise PortExhaustedError(desired_port=port)
        result[port] = actual
        claimed.add(actual)
        PORT_REASSIGNMENTS_TOTAL.inc()
        logger.info(
            f"Host port {port} is in use, using {actual}",
            extra={"desired_port": port, "actual_port": actual},
        )

    return result


async def _fetch_container_name(client: httpx.AsyncClient, url: str) -> str | None:
    try:
        response = await client.head(url)
    except httpx.HTTPError:
        return None
    return response.headers.get(IDENTITY_HEADER)


async def discover_forwarded_port(
    container_name: str,
    range_start: int,
    range_end: int,
    *,
    timeout: float = 2.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int | None:
    """Find the host port currently serving ``container_name``.

    Each port in ``[range_start, range_end]`` is requested over plain HTTP, then
    over HTTPS with certificate verification disabled (loopback only). The
    first port whose identity header matches wins.

    Args:
        container_name: Expected value of the identity header
        range_start: First port to check
        range_end: Last port to check (inclusive)
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (used by tests)

    Returns:
        The matching port, or None when no port in range answers for the container
    """
    if range_start > range_end:
        raise ValueError(f"invalid port range {range_start}-{range_end}")

    # Loopback only; the proxy's certificates come from a local CA.
    async with httpx.AsyncClient(
        timeout=timeout, verify=False, transport=transport, follow_redirects=False
    ) as client:
        for port in range(range_start, range_end + 1):
            for scheme in ("http", "https"):
                name = await _fetch_container_name(client, f"{scheme}://localhost:{port}/")
                if name == container_name:
                    logger.info(
                        f"Discovered {container_name} on port {port}",
                        extra={"container_name": container_name, "port": port, "scheme": scheme},
                    )
                    return port

    logger.debug(
        f"No port in {range_start}-{range_end} answers for {container_name}",
        extra={"container_name": container_name},
    )
    return None
