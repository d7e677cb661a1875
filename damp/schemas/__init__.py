"""Pydantic schemas shared across the orchestration components."""

from damp.schemas.containers import (
    ContainerConfig,
    ContainerInfo,
    ContainerStateSnapshot,
    CustomConfig,
    ExecResult,
    HealthcheckConfig,
    HealthStatus,
    LogLine,
    LogStreamKind,
    ManagedContainers,
    PortMapping,
    ResourceStats,
)
from damp.schemas.entities import (
    Project,
    ProjectCreate,
    ServiceDefinition,
    ServiceInfo,
    ServiceType,
)
from damp.schemas.events import (
    ConnectionState,
    ConnectionStatus,
    ContainerAction,
    ContainerEvent,
    Invalidation,
    InvalidationScope,
)
from damp.schemas.results import HostsResult, OperationResult, ProxySyncResult

__all__ = [
    "ConnectionState",
    "ConnectionStatus",
    "ContainerAction",
    "ContainerConfig",
    "ContainerEvent",
    "ContainerInfo",
    "ContainerStateSnapshot",
    "CustomConfig",
    "ExecResult",
    "HealthStatus",
    "HealthcheckConfig",
    "HostsResult",
    "Invalidation",
    "InvalidationScope",
    "LogLine",
    "LogStreamKind",
    "ManagedContainers",
    "OperationResult",
    "PortMapping",
    "Project",
    "ProjectCreate",
    "ProxySyncResult",
    "ResourceStats",
    "ServiceDefinition",
    "ServiceInfo",
    "ServiceType",
]
