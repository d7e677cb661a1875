"""Result shapes returned across component seams instead of raised errors."""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

from damp.core.exceptions import DampError
from damp.core.logging import sanitize_error

T = TypeVar("T")


class OperationResult(BaseModel, Generic[T]):
    """Outcome of an entity lifecycle operation."""

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> OperationResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: BaseException | str, error_code: str | None = None) -> OperationResult[T]:
        """Build a failure result from an exception or message.

        Orchestrator errors contribute their error code; other exceptions are
        reported as INTERNAL_ERROR.
        """
        if isinstance(error, str):
            return cls(success=False, error=error, error_code=error_code)
        if error_code is None:
            error_code = error.error_code if isinstance(error, DampError) else "INTERNAL_ERROR"
        return cls(success=False, error=sanitize_error(error), error_code=error_code)


class ProxySyncResult(BaseModel):
    success: bool
    error: str | None = None
    skipped: bool = Field(False, description="True when the proxy was not running")


class HostsResult(BaseModel):
    success: bool
    error: str | None = None
