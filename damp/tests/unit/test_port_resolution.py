"""Unit tests for host port resolution and forwarded port discovery."""

from __future__ import annotations

import socket

import httpx
import pytest
from hypothesis import given
from hypothesis import strategies as st

from damp.core.exceptions import PortExhaustedError
from damp.services.port_resolution import (
    check_port_available,
    discover_forwarded_port,
    resolve_available_ports,
)


class TestCheckPortAvailable:
    """Tests for check_port_available against real sockets."""

    def test_open_port_is_available(self):
        """An unbound port is reported available."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]
        assert check_port_available(port) is True

    def test_listening_port_is_not_available(self):
        """A port with a listener is reported in use."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]
            s.listen(1)
            assert check_port_available(port) is False


class TestResolveAvailablePorts:
    """Tests for resolve_available_ports with an injected availability check."""

    @pytest.mark.asyncio
    async def test_free_ports_map_to_themselves(self):
        result = await resolve_available_ports([3306, 8080], checker=lambda _port: True)
        assert result == {3306: 3306, 8080: 8080}

    @pytest.mark.asyncio
    async def test_occupied_port_scans_upward(self):
        """Desired 3306 bound by another process resolves to 3307."""
        occupied = {3306}
        result = await resolve_available_ports([3306], checker=lambda p: p not in occupied)
        assert result == {3306: 3307}

    @pytest.mark.asyncio
    async def test_reassignment_skips_other_desired_ports(self):
        """A reassigned port never takes a port another mapping keeps."""
        occupied = {3306}
        result = await resolve_available_ports([3306, 3307], checker=lambda p: p not in occupied)
        assert result == {3306: 3308, 3307: 3307}

    @pytest.mark.asyncio
    async def test_duplicates_collapse(self):
        result = await resolve_available_ports([80, 80], checker=lambda _port: True)
        assert result == {80: 80}

    @pytest.mark.asyncio
    async def test_pool_is_used_for_reassignment(self):
        occupied = {80}
        result = await resolve_available_ports(
            [80], pool=range(18000, 18010), checker=lambda p: p not in occupied
        )
        assert result == {80: 18000}

    @pytest.mark.asyncio
    async def test_exhaustion_reports_desired_port(self):
        with pytest.raises(PortExhaustedError) as exc_info:
            await resolve_available_ports([65534], checker=lambda p: p < 65534)
        assert exc_info.value.desired_port == 65534
        assert exc_info.value.error_code == "PORT_EXHAUSTED"

    @pytest.mark.asyncio
    async def test_empty_input(self):
        assert await resolve_available_ports([], checker=lambda _port: True) == {}

    @given(
        desired=st.lists(st.integers(min_value=1024, max_value=1200), max_size=15),
        occupied=st.sets(st.integers(min_value=1024, max_value=1300), max_size=60),
    )
    @pytest.mark.asyncio
    async def test_resolved_ports_are_unique_free_and_not_lower(self, desired, occupied):
        """Every result is free, distinct, and reassigned ports sit above the first collision."""
        result = await resolve_available_ports(desired, checker=lambda p: p not in occupied)

        assert set(result) == set(desired)
        actual = list(result.values())
        assert len(actual) == len(set(actual))
        assert not set(actual) & occupied
        collisions = sorted(p for p in set(desired) if p in occupied)
        for wanted, got in result.items():
            if got != wanted:
                assert got > wanted
                assert got > collisions[0]
            else:
                assert wanted not in occupied


def _identity_transport(answers: dict[tuple[str, int], str]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        name = answers.get((request.url.scheme, request.url.port))
        if name is None:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, headers={"X-Container-Name": name})

    return httpx.MockTransport(handler)


class TestDiscoverForwardedPort:
    """Tests for discover_forwarded_port with a mocked HTTP transport."""

    @pytest.mark.asyncio
    async def test_finds_http_match(self):
        transport = _identity_transport({("http", 8445): "demo_devcontainer"})
        port = await discover_forwarded_port(
            "demo_devcontainer", 8443, 8462, transport=transport
        )
        assert port == 8445

    @pytest.mark.asyncio
    async def test_falls_back_to_https(self):
        transport = _identity_transport({("https", 8450): "demo_devcontainer"})
        port = await discover_forwarded_port(
            "demo_devcontainer", 8443, 8462, transport=transport
        )
        assert port == 8450

    @pytest.mark.asyncio
    async def test_ignores_other_containers(self):
        transport = _identity_transport(
            {("http", 8443): "other_devcontainer", ("http", 8444): "demo_devcontainer"}
        )
        port = await discover_forwarded_port(
            "demo_devcontainer", 8443, 8462, transport=transport
        )
        assert port == 8444

    @pytest.mark.asyncio
    async def test_returns_none_when_nothing_matches(self):
        transport = _identity_transport({})
        assert (
            await discover_forwarded_port("demo_devcontainer", 8443, 8445, transport=transport)
            is None
        )

    @pytest.mark.asyncio
    async def test_rejects_inverted_range(self):
        with pytest.raises(ValueError):
            await discover_forwarded_port("demo", 9000, 8000)
