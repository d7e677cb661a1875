"""Catalog of installable services.

Each entry carries the default container config used when the service is
installed without overrides. Service containers are named
``damp-<service id>`` so engine events can be mapped back to the service.
"""

from __future__ import annotations

from damp.core.exceptions import EntityNotFoundError
from damp.schemas.containers import ContainerConfig, HealthcheckConfig
from damp.schemas.entities import ServiceDefinition, ServiceType

_SECOND_NS = 1_000_000_000


def _healthcheck(*test: str, start_period: int = 30) -> HealthcheckConfig:
    return HealthcheckConfig(
        test=list(test),
        interval=10 * _SECOND_NS,
        timeout=5 * _SECOND_NS,
        retries=5,
        start_period=start_period * _SECOND_NS,
    )


SERVICE_DEFINITIONS: dict[str, ServiceDefinition] = {
    definition.id: definition
    for definition in [
        ServiceDefinition(
            id="caddy",
            display_name="Web Server",
            description="Caddy reverse proxy server",
            service_type=ServiceType.WEB,
            required=True,
            default_config=ContainerConfig(
                image="caddy:latest",
                container_name="damp-caddy",
                ports=[(80, 80), (443, 443)],
                volume_bindings=["damp_caddy_data:/data", "damp_caddy_config:/config"],
            ),
            post_install_message=(
                "Caddy is ready. Certificates for .local domains are issued by its local CA."
            ),
        ),
        ServiceDefinition(
            id="mysql",
            display_name="MySQL Database",
            description="MySQL database server",
            service_type=ServiceType.DATABASE,
            default_config=ContainerConfig(
                image="mysql:latest",
                container_name="damp-mysql",
                ports=[(3306, 3306)],
                environment_vars=[
                    "MYSQL_ROOT_PASSWORD=root",
                    "MYSQL_ROOT_HOST=%",
                    "MYSQL_DATABASE=development",
                    "MYSQL_USER=developer",
                    "MYSQL_PASSWORD=developer",
                ],
                volume_bindings=["damp_mysql_data:/var/lib/mysql"],
                healthcheck=_healthcheck("CMD", "mysqladmin", "ping", "-proot"),
            ),
        ),
        ServiceDefinition(
            id="mariadb",
            display_name="MariaDB Database",
            description="MariaDB database server",
            service_type=ServiceType.DATABASE,
            default_config=ContainerConfig(
                image="mariadb:11",
                container_name="damp-mariadb",
                ports=[(3306, 3306)],
                environment_vars=[
                    "MARIADB_ROOT_PASSWORD=root",
                    "MARIADB_ROOT_HOST=%",
                    "MARIADB_DATABASE=development",
                    "MARIADB_USER=developer",
                    "MARIADB_PASSWORD=developer",
                ],
                volume_bindings=["damp-mariadb:/var/lib/mysql"],
                healthcheck=_healthcheck(
                    "CMD", "healthcheck.sh", "--connect", "--innodb_initialized"
                ),
            ),
        ),
        ServiceDefinition(
            id="postgresql",
            display_name="PostgreSQL Database",
            description="PostgreSQL database server",
            service_type=ServiceType.DATABASE,
            default_config=ContainerConfig(
                image="postgres:17-alpine",
                container_name="damp-postgresql",
                ports=[(5432, 5432)],
                environment_vars=[
                    "POSTGRES_PASSWORD=postgres",
                    "POSTGRES_DB=postgres",
                    "POSTGRES_USER=postgres",
                ],
                volume_bindings=["damp_pgsql_data:/var/lib/postgresql/data"],
                healthcheck=_healthcheck("CMD", "pg_isready", "-q", "-d", "postgres", "-U", "postgres"),
            ),
        ),
        ServiceDefinition(
            id="mongodb",
            display_name="MongoDB Database",
            description="MongoDB document database",
            service_type=ServiceType.DATABASE,
            default_config=ContainerConfig(
                image="mongo",
                container_name="damp-mongodb",
                ports=[(27017, 27017)],
                environment_vars=[
                    "MONGO_INITDB_ROOT_USERNAME=root",
                    "MONGO_INITDB_ROOT_PASSWORD=root",
                ],
                volume_bindings=["damp-mongodb:/data/db"],
                healthcheck=_healthcheck(
                    "CMD", "mongosh", "--quiet", "--eval", "db.runCommand({ping:1}).ok"
                ),
            ),
        ),
        ServiceDefinition(
            id="redis",
            display_name="Redis Cache",
            description="Redis key-value store for caching and sessions",
            service_type=ServiceType.CACHE,
            default_config=ContainerConfig(
                image="redis:alpine",
                container_name="damp-redis",
                ports=[(6379, 6379)],
                volume_bindings=["damp-redis:/data"],
                healthcheck=_healthcheck("CMD", "redis-cli", "ping", start_period=5),
            ),
        ),
        ServiceDefinition(
            id="valkey",
            display_name="Valkey Cache",
            description="Valkey key-value store for caching and sessions",
            service_type=ServiceType.CACHE,
            default_config=ContainerConfig(
                image="valkey/valkey:alpine",
                container_name="damp-valkey",
                ports=[(6379, 6379)],
                volume_bindings=["damp-valkey:/data"],
                healthcheck=_healthcheck("CMD", "valkey-cli", "ping", start_period=5),
            ),
        ),
        ServiceDefinition(
            id="memcached",
            display_name="Memcached",
            description="Memcached distributed memory caching system",
            service_type=ServiceType.CACHE,
            default_config=ContainerConfig(
                image="memcached:alpine",
                container_name="damp-memcached",
                ports=[(11211, 11211)],
            ),
        ),
        ServiceDefinition(
            id="mailpit",
            display_name="Mailpit",
            description="Email testing server",
            service_type=ServiceType.EMAIL,
            default_config=ContainerConfig(
                image="axllent/mailpit:latest",
                container_name="damp-mailpit",
                ports=[(1025, 1025), (8025, 8025)],
                environment_vars=[
                    "MP_SMTP_BIND_ADDR=0.0.0.0:1025",
                    "MP_UI_BIND_ADDR=0.0.0.0:8025",
                    "MP_MAX_MESSAGES=5000",
                ],
            ),
            post_install_message="Web UI: http://localhost:8025, SMTP: localhost:1025",
        ),
        ServiceDefinition(
            id="meilisearch",
            display_name="Meilisearch",
            description="Meilisearch full-text search engine",
            service_type=ServiceType.SEARCH,
            default_config=ContainerConfig(
                image="getmeili/meilisearch:latest",
                container_name="damp-meilisearch",
                ports=[(7700, 7700)],
                environment_vars=["MEILI_NO_ANALYTICS=false", "MEILI_MASTER_KEY=masterkey"],
                volume_bindings=["damp-meilisearch:/meili_data"],
                healthcheck=_healthcheck("CMD", "curl", "--fail", "http://127.0.0.1:7700/health"),
            ),
        ),
        ServiceDefinition(
            id="typesense",
            display_name="Typesense Search",
            description="Typesense open source search engine",
            service_type=ServiceType.SEARCH,
            default_config=ContainerConfig(
                image="typesense/typesense:27.1",
                container_name="damp-typesense",
                ports=[(8108, 8108)],
                environment_vars=[
                    "TYPESENSE_DATA_DIR=/typesense-data",
                    "TYPESENSE_API_KEY=xyz",
                    "TYPESENSE_ENABLE_CORS=true",
                ],
                volume_bindings=["damp-typesense:/typesense-data"],
            ),
        ),
        ServiceDefinition(
            id="minio",
            display_name="MinIO Storage",
            description="MinIO S3-compatible object storage",
            service_type=ServiceType.STORAGE,
            default_config=ContainerConfig(
                image="minio/minio:latest",
                container_name="damp-minio",
                ports=[(9000, 9000), (8900, 8900)],
                environment_vars=["MINIO_ROOT_USER=root", "MINIO_ROOT_PASSWORD=password"],
                volume_bindings=["damp-minio:/data"],
                healthcheck=_healthcheck("CMD", "mc", "ready", "local"),
            ),
        ),
        ServiceDefinition(
            id="rabbitmq",
            display_name="RabbitMQ",
            description="RabbitMQ message broker for queues and messaging",
            service_type=ServiceType.QUEUE,
            default_config=ContainerConfig(
                image="rabbitmq:4-management-alpine",
                container_name="damp-rabbitmq",
                ports=[(5672, 5672), (15672, 15672)],
                environment_vars=[
                    "RABBITMQ_DEFAULT_USER=rabbitmq",
                    "RABBITMQ_DEFAULT_PASS=rabbitmq",
                ],
                volume_bindings=["damp-rabbitmq:/var/lib/rabbitmq"],
                healthcheck=_healthcheck("CMD", "rabbitmq-diagnostics", "-q", "ping"),
            ),
        ),
    ]
}


def get_service_definition(service_id: str) -> ServiceDefinition:
    """Look up a catalog entry.

    Raises:
        EntityNotFoundError: If ``service_id`` is not in the catalog
    """
    try:
        return SERVICE_DEFINITIONS[service_id]
    except KeyError:
        raise EntityNotFoundError("service", service_id) from None
