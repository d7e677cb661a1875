"""Pydantic schemas for engine events, invalidation signals and connection status."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum, auto
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from damp.schemas.containers import HealthStatus


class ContainerAction(StrEnum):
    """Container actions the event bus subscribes to."""

    START = auto()
    STOP = auto()
    DIE = auto()
    KILL = auto()
    PAUSE = auto()
    UNPAUSE = auto()
    RESTART = auto()
    HEALTH_STATUS = auto()

    @property
    def changes_state(self) -> bool:
        """Whether the action changes running state (and so warrants a bulk refresh)."""
        return self in _STATE_CHANGING


_STATE_CHANGING = frozenset(
    {
        ContainerAction.START,
        ContainerAction.STOP,
        ContainerAction.DIE,
        ContainerAction.KILL,
        ContainerAction.RESTART,
    }
)


class ContainerEvent(BaseModel):
    """A container event reported by the engine."""

    model_config = ConfigDict(frozen=True)

    container_id: str
    container_name: str
    action: ContainerAction
    timestamp: datetime
    health_status: HealthStatus | None = None

    @classmethod
    def from_engine(cls, raw: dict[str, Any]) -> ContainerEvent | None:
        """Parse a raw engine event.

        Returns:
            The event, or None when the action is not one we track or the
            payload lacks a container identity.
        """
        actor = raw.get("Actor") or {}
        attributes = actor.get("Attributes") or {}
        container_id = actor.get("ID") or raw.get("id")
        container_name = attributes.get("name") or ""
        raw_action = str(raw.get("Action") or raw.get("status") or "")
        action_name, _, detail = raw_action.partition(":")
        try:
            action = ContainerAction(action_name.strip())
        except ValueError:
            return None
        if not container_id:
            return None

        health: HealthStatus | None = None
        if action is ContainerAction.HEALTH_STATUS:
            try:
                health = HealthStatus(detail.strip())
            except ValueError:
                health = None

        time_nano = raw.get("timeNano")
        if time_nano:
            timestamp = datetime.fromtimestamp(int(time_nano) / 1_000_000_000, tz=UTC)
        elif raw.get("time"):
            timestamp = datetime.fromtimestamp(int(raw["time"]), tz=UTC)
        else:
            timestamp = datetime.now(UTC)

        return cls(
            container_id=container_id,
            container_name=container_name.lstrip("/"),
            action=action,
            timestamp=timestamp,
            health_status=health,
        )


class InvalidationScope(StrEnum):
    PROJECT = auto()
    SERVICE = auto()
    ALL = auto()


class Invalidation(BaseModel):
    """Signal telling observers that cached entity state is stale."""

    model_config = ConfigDict(frozen=True)

    scope: InvalidationScope
    entity_id: str | None = None
    reason: str = ""


class ConnectionState(StrEnum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()


class ConnectionStatus(BaseModel):
    """Event stream connection status published to observers."""

    model_config = ConfigDict(frozen=True)

    state: ConnectionState = ConnectionState.DISCONNECTED
    attempt: int = Field(0, ge=0, description="Consecutive failed connection attempts")
    last_error: str | None = None

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED
