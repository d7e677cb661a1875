"""Application configuration using Pydantic Settings."""

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestrator settings loaded from environment variables (prefix ``DAMP_``)."""

    model_config = SettingsConfigDict(
        env_prefix="DAMP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "DAMP Orchestrator"
    app_version: str = "0.1.0"

    # Container engine
    docker_host: str | None = Field(
        default=None,
        description="Engine URL (unix:///var/run/docker.sock, tcp://...). Defaults to DOCKER_HOST.",
    )
    engine_ping_timeout: float = Field(default=3.0, gt=0, description="Timeout for engine ping")
    engine_info_timeout: float = Field(
        default=3.0, gt=0, description="Timeout for the engine info call in stats aggregation"
    )
    engine_list_timeout: float = Field(
        default=3.0, gt=0, description="Timeout for the container list call in stats aggregation"
    )
    engine_stats_timeout: float = Field(
        default=2.0, gt=0, description="Timeout for each per-container stats call"
    )
    container_stop_timeout: int = Field(
        default=10, ge=0, description="Seconds to wait for a graceful stop before killing"
    )
    exec_timeout: float = Field(
        default=60.0, gt=0, description="Default deadline for commands run inside containers"
    )

    # Naming conventions
    network_name: str = Field(default="damp-network", description="Shared bridge network")
    service_container_prefix: str = Field(
        default="damp-", description="Prefix of service container names"
    )
    project_container_suffix: str = Field(
        default="devcontainer", description="Suffix of project container names"
    )
    project_volume_prefix: str = Field(
        default="damp_project_", description="Prefix of project volume names"
    )
    project_domain_suffix: str = Field(default=".local", description="Project domain suffix")
    project_image: str = Field(
        default="mcr.microsoft.com/devcontainers/php:8.3",
        description="Default image for project containers",
    )
    project_workspace_path: str = Field(
        default="/var/www/html", description="Mount point of the project volume"
    )
    hosts_ip: str = Field(default="127.0.0.1", description="Address written to the hosts file")

    # Reverse proxy
    proxy_service_id: str = Field(default="caddy", description="Service id of the edge proxy")
    proxy_container_name: str = Field(default="damp-caddy", description="Edge proxy container")
    proxy_config_path: str = Field(
        default="/etc/caddy/Caddyfile", description="Configuration file inside the proxy"
    )
    proxy_root_domain: str = Field(default="damp.local", description="Bootstrap domain")
    proxy_upstream_port: int = Field(
        default=8080, ge=1, le=65535, description="Fixed upstream port of project containers"
    )
    proxy_root_cert_path: str = Field(
        default="/data/caddy/pki/authorities/local/root.crt",
        description="Local CA root certificate inside the proxy",
    )
    proxy_cert_timeout: float = Field(
        default=30.0, gt=0, description="Seconds to wait for the proxy to generate its CA"
    )
    proxy_cert_poll_interval: float = Field(default=2.0, gt=0)
    proxy_ready_timeout: float = Field(
        default=30.0, gt=0, description="Seconds to wait for the proxy to be running"
    )

    # Port resolution
    port_pool_start: int | None = Field(
        default=None, ge=1, le=65535, description="First port of an optional fallback pool"
    )
    port_pool_end: int | None = Field(
        default=None, ge=1, le=65535, description="Last port of an optional fallback pool"
    )
    port_max: int = Field(default=65535, ge=1, le=65535)
    serialize_port_allocation: bool = Field(
        default=True,
        description="Hold a process-wide lock across port resolution and container creation",
    )
    port_scan_start: int = Field(
        default=8443, ge=1, le=65535, description="First port checked by forwarded port discovery"
    )
    port_scan_range: int = Field(default=20, ge=1, description="Number of ports checked")
    port_check_timeout: float = Field(default=2.0, gt=0, description="Timeout per port check")

    # Event propagation
    event_debounce_seconds: float = Field(
        default=0.3, ge=0, description="Coalescing window for bulk invalidations"
    )
    event_reconnect_base_delay: float = Field(default=1.0, gt=0)
    event_reconnect_max_delay: float = Field(default=30.0, gt=0)
    event_reconnect_jitter: float = Field(default=0.1, ge=0, le=1)

    # Images
    image_refresh_days: int = Field(
        default=7, ge=0, description="Re-pull floating tags older than this many days"
    )

    # Persistence
    data_dir: str = Field(default="data", description="Directory for the JSON state store")

    # Hosts file helper
    hosts_helper_command: list[str] = Field(
        default_factory=list,
        description="Elevated helper invoked as <command> add|remove <ip> <domain>",
    )
    hosts_helper_timeout: float = Field(default=30.0, gt=0)

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Emit JSON log lines to the console")
    log_file_path: str = Field(default="data/logs/damp.log", description="Rotating log file")
    log_file_max_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)
    log_file_backup_count: int = Field(default=5, ge=0)

    @field_validator("log_file_path")
    @classmethod
    def validate_log_file_path(cls, v: str) -> str:
        """Ensure log directory exists."""
        Path(v).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_port_ranges(self) -> "Settings":
        """Check the port pool bounds and the discovery scan range."""
        if (self.port_pool_start is None) != (self.port_pool_end is None):
            raise ValueError("port_pool_start and port_pool_end must be set together")
        if (
            self.port_pool_start is not None
            and self.port_pool_end is not None
            and self.port_pool_start > self.port_pool_end
        ):
            raise ValueError("port_pool_start must not exceed port_pool_end")
        if self.port_scan_start + self.port_scan_range - 1 > 65535:
            raise ValueError("port scan range exceeds 65535")
        return self

    @property
    def port_pool(self) -> range | None:
        """Configured fallback pool, or None to scan upward from the desired port."""
        if self.port_pool_start is None or self.port_pool_end is None:
            return None
        return range(self.port_pool_start, self.port_pool_end + 1)

    @property
    def port_scan_end(self) -> int:
        return self.port_scan_start + self.port_scan_range - 1


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    runtime_env_path = os.getenv("DAMP_RUNTIME_ENV_PATH", "./data/runtime.env")
    return Settings(_env_file=(".env", runtime_env_path))
