"""Exception hierarchy for the orchestration core.

This module provides the error taxonomy that:
1. Categorizes errors by kind (engine, conflict, port allocation, validation)
2. Keeps docker-py and transport exceptions from leaking past the engine client
3. Enables structured error results via ``to_dict()``
"""

from __future__ import annotations

from typing import Any


class DampError(Exception):
    """Base exception for all orchestrator errors."""

    default_message: str = "An unexpected error occurred"
    default_error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation / lookup
# =============================================================================


class InvalidInputError(DampError):
    default_message = "Invalid input provided"
    default_error_code = "INVALID_INPUT"

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        if value is not None:
            str_value = str(value)
            details["value"] = str_value[:100] if len(str_value) > 100 else str_value
        super().__init__(message, details=details, **kwargs)


class EntityNotFoundError(DampError):
    """A project or service id is unknown to the registry or catalog."""

    default_message = "Entity not found"
    default_error_code = "ENTITY_NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str, message: str | None = None) -> None:
        if message is None:
            message = f"{entity_type.title()} '{entity_id}' not found"
        super().__init__(
            message, details={"entity_type": entity_type, "entity_id": entity_id}
        )


class ConfigurationError(DampError):
    default_message = "Invalid configuration"
    default_error_code = "CONFIGURATION_ERROR"


# =============================================================================
# Engine errors
# =============================================================================


class EngineError(DampError):
    """Any failure reported by the container engine."""

    default_message = "Container engine error"
    default_error_code = "ENGINE_ERROR"


class EngineUnavailableError(EngineError):
    default_message = "Container engine is not reachable"
    default_error_code = "ENGINE_UNAVAILABLE"


class ResourceNotFoundError(EngineError):
    default_message = "Resource not found"
    default_error_code = "RESOURCE_NOT_FOUND"

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        message: str | None = None,
        **kwargs: Any,
    ) -> None:
        if message is None:
            message = f"{resource_type.title()} '{resource_id}' not found"
        details = kwargs.pop("details", {}) or {}
        details["resource_type"] = resource_type
        details["resource_id"] = str(resource_id)
        self.resource_type = resource_type
        self.resource_id = str(resource_id)
        super().__init__(message, details=details, **kwargs)


class ResourceConflictError(EngineError):
    default_message = "Resource conflict"
    default_error_code = "RESOURCE_CONFLICT"

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        message: str | None = None,
        **kwargs: Any,
    ) -> None:
        if message is None:
            message = f"{resource_type.title()} '{resource_id}' conflicts with existing state"
        details = kwargs.pop("details", {}) or {}
        details["resource_type"] = resource_type
        details["resource_id"] = str(resource_id)
        self.resource_type = resource_type
        self.resource_id = str(resource_id)
        super().__init__(message, details=details, **kwargs)


class ResourceInUseError(ResourceConflictError):
    """A volume (or network) cannot be removed while a container references it."""

    default_message = "Resource is in use"
    default_error_code = "RESOURCE_IN_USE"

    def __init__(self, resource_type: str, resource_id: str, message: str | None = None) -> None:
        if message is None:
            message = (
                f"{resource_type.title()} '{resource_id}' is in use by a container; "
                "remove the container first or force removal"
            )
        super().__init__(resource_type, resource_id, message)


class CreateError(EngineError):
    default_message = "Failed to create container"
    default_error_code = "CREATE_FAILED"

    def __init__(self, container_name: str, cause: BaseException) -> None:
        self.container_name = container_name
        self.cause = cause
        super().__init__(
            f"Failed to create container '{container_name}': {cause}",
            details={"container_name": container_name, "cause": type(cause).__name__},
        )


class ContainerOperationError(EngineError):
    default_message = "Container operation failed"
    default_error_code = "CONTAINER_OPERATION_FAILED"

    def __init__(self, operation: str, container: str, cause: BaseException) -> None:
        self.operation = operation
        self.container = container
        self.cause = cause
        super().__init__(
            f"Failed to {operation} container '{container}': {cause}",
            details={"operation": operation, "container": container},
        )


# =============================================================================
# Port allocation
# =============================================================================


class PortExhaustedError(DampError):
    default_message = "No free host port available"
    default_error_code = "PORT_EXHAUSTED"

    def __init__(self, desired_port: int, message: str | None = None) -> None:
        self.desired_port = desired_port
        if message is None:
            message = f"No free host port available for desired port {desired_port}"
        super().__init__(message, details={"desired_port": desired_port})
