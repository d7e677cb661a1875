"""Unit tests for the engine event bus.

The fake engine's event streams are fed by hand, so every test controls
exactly which events arrive and when the stream drops.
"""

from __future__ import annotations

import asyncio

import pytest

from damp.core.exceptions import EngineUnavailableError
from damp.schemas.entities import Project
from damp.schemas.events import (
    ConnectionState,
    ContainerAction,
    ContainerEvent,
    Invalidation,
    InvalidationScope,
)
from damp.services.event_bus import SUBSCRIBED_ACTIONS, EngineEventBus
from damp.tests.fakes import container_event


async def _eventually(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
async def bus(fake_docker, project_registry, settings, hub):
    event_bus = EngineEventBus(fake_docker, project_registry, settings, hub)
    yield event_bus
    await event_bus.stop()


@pytest.fixture
def received(hub) -> list[Invalidation]:
    signals: list[Invalidation] = []
    hub.subscribe(signals.append)
    return signals


def _bulk(signals: list[Invalidation], reason: str) -> list[Invalidation]:
    return [s for s in signals if s.scope is InvalidationScope.ALL and s.reason == reason]


class TestContainerEventParsing:
    def test_parses_modern_payload(self):
        event = ContainerEvent.from_engine(container_event("damp-mysql", "start", "abc"))
        assert event is not None
        assert event.container_id == "abc"
        assert event.container_name == "damp-mysql"
        assert event.action is ContainerAction.START

    def test_parses_health_status_detail(self):
        raw = container_event("damp-mysql", "health_status: healthy")
        event = ContainerEvent.from_engine(raw)
        assert event is not None
        assert event.action is ContainerAction.HEALTH_STATUS
        assert event.health_status == "healthy"

    def test_legacy_status_field(self):
        event = ContainerEvent.from_engine({"status": "die", "id": "abc", "time": 1})
        assert event is not None
        assert event.action is ContainerAction.DIE

    def test_untracked_action_is_ignored(self):
        assert ContainerEvent.from_engine(container_event("x", "exec_create")) is None


class TestEventMapping:
    """Tests for handle_event without a live stream."""

    @pytest.mark.asyncio
    async def test_project_container_maps_to_project(self, bus, project_registry, received):
        await project_registry.save_project(
            Project(
                id="p-1",
                name="demo",
                path="/home/dev/demo",
                domain="demo.local",
                container_name="demo_devcontainer",
                volume_name="damp_project_demo",
                image="img",
            )
        )
        event = ContainerEvent.from_engine(container_event("demo_devcontainer", "stop"))

        invalidation = await bus.handle_event(event)

        assert invalidation == Invalidation(
            scope=InvalidationScope.PROJECT, entity_id="p-1", reason="stop"
        )
        assert received[0] == invalidation

    @pytest.mark.asyncio
    async def test_service_container_maps_by_prefix(self, bus):
        event = ContainerEvent.from_engine(container_event("damp-redis", "start"))
        invalidation = await bus.handle_event(event)
        assert invalidation is not None
        assert invalidation.scope is InvalidationScope.SERVICE
        assert invalidation.entity_id == "redis"

    @pytest.mark.asyncio
    async def test_unknown_container_is_ignored(self, bus, received):
        event = ContainerEvent.from_engine(container_event("someone_elses_db", "start"))
        assert await bus.handle_event(event) is None
        assert received == []

    @pytest.mark.asyncio
    async def test_burst_yields_single_bulk(self, bus, received):
        for action in ["start", "die", "stop", "start", "restart"] * 2:
            await bus.handle_event(
                ContainerEvent.from_engine(container_event("damp-mysql", action))
            )
        await asyncio.sleep(0.2)

        targeted = [s for s in received if s.scope is InvalidationScope.SERVICE]
        assert len(targeted) == 10
        assert len(_bulk(received, "state-change")) == 1

    @pytest.mark.asyncio
    async def test_health_event_is_targeted_only(self, bus, received):
        await bus.handle_event(
            ContainerEvent.from_engine(container_event("damp-mysql", "health_status: healthy"))
        )
        await asyncio.sleep(0.15)
        assert [s.scope for s in received] == [InvalidationScope.SERVICE]


class TestSupervision:
    """Tests for the supervised subscription."""

    @pytest.mark.asyncio
    async def test_connect_publishes_one_resync(self, bus, fake_docker, received):
        await bus.start()
        await _eventually(lambda: bus.status.connected)

        assert len(_bulk(received, "resync")) == 1
        assert fake_docker.event_streams
        assert bus.is_running

    @pytest.mark.asyncio
    async def test_subscription_filters(self, bus, fake_docker):
        seen_filters = []
        original = fake_docker.events

        async def recording(filters):
            seen_filters.append(filters)
            return await original(filters)

        fake_docker.events = recording
        await bus.start()
        await _eventually(lambda: bus.status.connected)
        assert seen_filters[0] == {"type": ["container"], "event": SUBSCRIBED_ACTIONS}

    @pytest.mark.asyncio
    async def test_events_flow_through_stream(self, bus, fake_docker, received):
        await bus.start()
        await _eventually(lambda: bus.status.connected)

        fake_docker.event_streams[-1].push(container_event("damp-redis", "start"))
        await _eventually(lambda: any(s.scope is InvalidationScope.SERVICE for s in received))
        await _eventually(lambda: len(_bulk(received, "state-change")) == 1)

    @pytest.mark.asyncio
    async def test_reconnect_after_failures(self, bus, fake_docker, received):
        fake_docker.events_failures = 3
        states = []
        bus.on_connection_status_change(lambda status: states.append(status))

        await bus.start()
        await _eventually(lambda: bus.status.connected)

        assert len(fake_docker.event_streams) == 1
        assert len(_bulk(received, "resync")) == 1
        disconnected = [s for s in states if s.state is ConnectionState.DISCONNECTED]
        assert [s.attempt for s in disconnected] == [1, 2, 3]
        assert all(s.last_error for s in disconnected)

    @pytest.mark.asyncio
    async def test_each_reconnect_publishes_resync(self, bus, fake_docker, received):
        await bus.start()
        await _eventually(lambda: bus.status.connected)

        fake_docker.event_streams[-1].end()
        await _eventually(lambda: len(fake_docker.event_streams) == 2 and bus.status.connected)
        fake_docker.event_streams[-1].fail(EngineUnavailableError("connection reset"))
        await _eventually(lambda: len(fake_docker.event_streams) == 3 and bus.status.connected)

        assert len(_bulk(received, "resync")) == 3

    @pytest.mark.asyncio
    async def test_malformed_event_is_skipped(self, bus, fake_docker, received):
        await bus.start()
        await _eventually(lambda: bus.status.connected)

        bad = container_event("damp-mysql", "start")
        bad["time"] = "not-a-number"
        fake_docker.event_streams[-1].push(bad)
        fake_docker.event_streams[-1].push(container_event("damp-redis", "start"))

        await _eventually(
            lambda: any(
                s.scope is InvalidationScope.SERVICE and s.entity_id == "redis" for s in received
            )
        )
        assert bus.status.connected
        assert len(fake_docker.event_streams) == 1
        assert not any(s.entity_id == "mysql" for s in received)

    @pytest.mark.asyncio
    async def test_unexpected_stream_error_reconnects(self, bus, fake_docker, received):
        states = []
        bus.on_connection_status_change(lambda status: states.append(status))
        await bus.start()
        await _eventually(lambda: bus.status.connected)

        fake_docker.event_streams[-1].fail(RuntimeError("decoder crashed"))
        await _eventually(lambda: len(fake_docker.event_streams) == 2 and bus.status.connected)

        disconnected = [s for s in states if s.state is ConnectionState.DISCONNECTED]
        assert [s.attempt for s in disconnected] == [1]
        assert "decoder crashed" in disconnected[0].last_error
        assert len(_bulk(received, "resync")) == 2

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, bus, fake_docker):
        await bus.start()
        await bus.start()
        await _eventually(lambda: bus.status.connected)
        await asyncio.sleep(0.02)
        assert len(fake_docker.event_streams) == 1

    @pytest.mark.asyncio
    async def test_stop_closes_stream_and_cancels_pending_bulk(
        self, bus, fake_docker, received
    ):
        await bus.start()
        await _eventually(lambda: bus.status.connected)
        fake_docker.event_streams[-1].push(container_event("damp-redis", "stop"))
        await _eventually(lambda: any(s.scope is InvalidationScope.SERVICE for s in received))

        await bus.stop()
        await asyncio.sleep(0.15)

        assert fake_docker.event_streams[-1].closed
        assert _bulk(received, "state-change") == []
        assert bus.status.state is ConnectionState.DISCONNECTED
        assert not bus.is_running
