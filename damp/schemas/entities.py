"""Pydantic schemas for the entities the orchestrator manages: projects and services."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum, auto

from pydantic import BaseModel, ConfigDict, Field

from damp.schemas.containers import ContainerConfig


class ServiceType(StrEnum):
    """Category of a bundled service.

    - WEB: Edge proxy / web server
    - DATABASE: Relational and document databases
    - CACHE: In-memory caches and key-value stores
    - EMAIL: Mail catchers
    - SEARCH: Search engines
    - STORAGE: Object storage
    - QUEUE: Message brokers
    """

    WEB = auto()
    DATABASE = auto()
    CACHE = auto()
    EMAIL = auto()
    SEARCH = auto()
    STORAGE = auto()
    QUEUE = auto()


class ServiceDefinition(BaseModel):
    """Catalog entry describing an installable service."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Service identifier (e.g., 'mysql', 'caddy')")
    display_name: str = Field(..., description="Human-readable name")
    description: str = Field("", description="Short description")
    service_type: ServiceType
    required: bool = Field(False, description="Whether the environment needs this service")
    default_config: ContainerConfig
    post_install_message: str | None = None


class ProjectCreate(BaseModel):
    """Input for creating a project."""

    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    path: str = Field(..., min_length=1, description="Project folder on the host")
    image: str | None = Field(None, description="Container image (defaults from settings)")
    forwarded_port: int | None = Field(None, ge=1, le=65535)


_DOMAIN_PATTERN = r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)+$"


class ProjectUpdate(BaseModel):
    """Changes to an existing project. Unset fields keep their current value.

    The name is fixed once created since container and volume names derive from it.
    """

    path: str | None = Field(None, min_length=1)
    domain: str | None = Field(None, max_length=253, pattern=_DOMAIN_PATTERN)
    image: str | None = Field(None, min_length=1)
    forwarded_port: int | None = Field(None, ge=1, le=65535)


class Project(BaseModel):
    """A per-project sandbox as persisted in the project registry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable project identifier")
    name: str = Field(..., description="Sanitized project name")
    path: str = Field(..., description="Project folder on the host")
    domain: str = Field(..., description="Local domain, e.g. 'demo.local'")
    container_name: str = Field(..., description="Project container name")
    volume_name: str = Field(..., description="Project volume name")
    image: str = Field(..., description="Project container image")
    forwarded_port: int | None = Field(None, ge=1, le=65535)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime | None = None


class ServiceInfo(BaseModel):
    """Catalog entry combined with install bookkeeping."""

    definition: ServiceDefinition
    installed: bool = False
