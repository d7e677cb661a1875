"""Pydantic schemas for container configuration and observed container state.

These are the values the lifecycle manager accepts and returns. Port
mappings accept either ints or numeric strings (``["8080", "8080"]``) and are
normalized to ints.
"""

from __future__ import annotations

from enum import StrEnum, auto
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from damp.core.labels import OwnerType


class PortMapping(NamedTuple):
    """A (host port, container port) pair."""

    host_port: int
    container_port: int


class HealthStatus(StrEnum):
    """Engine-reported health of a container.

    - STARTING: Healthcheck has not passed yet
    - HEALTHY: Healthcheck passing
    - UNHEALTHY: Healthcheck failing
    - NONE: No healthcheck configured, or container absent
    """

    STARTING = auto()
    HEALTHY = auto()
    UNHEALTHY = auto()
    NONE = auto()


class LogStreamKind(StrEnum):
    STDOUT = auto()
    STDERR = auto()


def _validate_port(value: int) -> int:
    if not 1 <= value <= 65535:
        raise ValueError(f"port out of range: {value}")
    return value


class HealthcheckConfig(BaseModel):
    """Engine healthcheck, passed through unchanged.

    Durations are in nanoseconds, as the engine API expects.
    """

    model_config = ConfigDict(frozen=True)

    test: list[str] = Field(..., min_length=1, description="Command, e.g. ['CMD', 'pg_isready']")
    interval: int | None = Field(None, ge=0, description="Interval between checks (ns)")
    timeout: int | None = Field(None, ge=0, description="Timeout of one check (ns)")
    retries: int | None = Field(None, ge=0, description="Consecutive failures before unhealthy")
    start_period: int | None = Field(None, ge=0, description="Grace period after start (ns)")

    def to_engine(self) -> dict[str, object]:
        payload: dict[str, object] = {"test": list(self.test)}
        for key in ("interval", "timeout", "retries", "start_period"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


class ContainerConfig(BaseModel):
    """Declarative description of a container to create."""

    model_config = ConfigDict(frozen=True)

    image: str = Field(..., min_length=1, description="Image reference")
    container_name: str = Field(..., min_length=1, description="Container name")
    ports: list[PortMapping] = Field(
        default_factory=list, description="Desired (host port, container port) pairs"
    )
    environment_vars: list[str] = Field(
        default_factory=list, description="Environment entries in KEY=VALUE form"
    )
    volume_bindings: list[str] = Field(
        default_factory=list, description="Bindings in source:target[:mode] form"
    )
    healthcheck: HealthcheckConfig | None = Field(None, description="Optional healthcheck")
    restart_policy: str = Field("unless-stopped", description="Engine restart policy name")

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, v: list[PortMapping]) -> list[PortMapping]:
        """Check port ranges and reject duplicate container or host ports."""
        container_ports: set[int] = set()
        host_ports: set[int] = set()
        for mapping in v:
            _validate_port(mapping.host_port)
            _validate_port(mapping.container_port)
            if mapping.container_port in container_ports:
                raise ValueError(f"duplicate container port: {mapping.container_port}")
            if mapping.host_port in host_ports:
                raise ValueError(f"duplicate host port: {mapping.host_port}")
            container_ports.add(mapping.container_port)
            host_ports.add(mapping.host_port)
        return v

    def merged_with(self, custom: CustomConfig | None) -> ContainerConfig:
        """Apply an override.

        Container name, ports and volume bindings are replaced wholesale when
        provided; environment entries are appended to the defaults.
        """
        if custom is None:
            return self
        update: dict[str, object] = {}
        if custom.container_name is not None:
            update["container_name"] = custom.container_name
        if custom.ports is not None:
            update["ports"] = list(custom.ports)
        if custom.volume_bindings is not None:
            update["volume_bindings"] = list(custom.volume_bindings)
        if custom.environment_vars:
            update["environment_vars"] = [*self.environment_vars, *custom.environment_vars]
        if not update:
            return self
        # Re-validate so the merged result satisfies the same constraints
        return ContainerConfig.model_validate({**self.model_dump(), **update})

    @property
    def named_volumes(self) -> list[str]:
        """Named volumes referenced by the bindings (host paths excluded)."""
        names: list[str] = []
        for binding in self.volume_bindings:
            source = binding.split(":", 1)[0]
            if source and not source.startswith(("/", ".", "~")) and source not in names:
                names.append(source)
        return names


class CustomConfig(BaseModel):
    """Per-install overrides of a service's default container config."""

    model_config = ConfigDict(frozen=True)

    container_name: str | None = Field(None, min_length=1)
    ports: list[PortMapping] | None = None
    environment_vars: list[str] = Field(default_factory=list)
    volume_bindings: list[str] | None = None


class ContainerStateSnapshot(BaseModel):
    """Point-in-time view of one container.

    An absent container is a normal value (``exists=False``), never an error.
    """

    model_config = ConfigDict(frozen=True)

    exists: bool = Field(..., description="Whether the container exists")
    running: bool = Field(False, description="Whether the container is running")
    container_id: str | None = Field(None, description="Engine container ID")
    container_name: str | None = Field(None, description="Container name without leading slash")
    state: str | None = Field(None, description="Engine state (running, exited, ...)")
    ports: list[PortMapping] = Field(default_factory=list, description="Published ports")
    health_status: HealthStatus = Field(HealthStatus.NONE, description="Health status")
    environment_vars: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_absent(self) -> ContainerStateSnapshot:
        if not self.exists and self.running:
            raise ValueError("an absent container cannot be running")
        return self

    @classmethod
    def absent(cls) -> ContainerStateSnapshot:
        return cls(exists=False, running=False, health_status=HealthStatus.NONE)


class ContainerInfo(BaseModel):
    """Summary row of a container list query."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    image: str | None = None
    state: str | None = None
    status: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.state == "running"


class ExecResult(BaseModel):
    """Outcome of a command run inside a container."""

    model_config = ConfigDict(frozen=True)

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class LogLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    stream: LogStreamKind
    text: str


class ResourceStats(BaseModel):
    """Aggregated resource usage of all managed containers."""

    cpus: int = Field(0, ge=0, description="Engine CPU count")
    cpu_usage_percent: float = Field(0.0, ge=0, description="Sum of container CPU usage")
    mem_total: int = Field(0, ge=0, description="Engine total memory (bytes)")
    mem_used: int = Field(0, ge=0, description="Sum of container memory usage (bytes)")
    container_count: int = Field(0, ge=0, description="Running managed containers sampled")


class ManagedContainers(BaseModel):
    """Managed containers grouped by owner type."""

    by_owner: dict[OwnerType, list[ContainerInfo]] = Field(default_factory=dict)

    def of(self, owner_type: OwnerType) -> list[ContainerInfo]:
        return self.by_owner.get(owner_type, [])

    @property
    def total(self) -> int:
        return sum(len(items) for items in self.by_owner.values())
