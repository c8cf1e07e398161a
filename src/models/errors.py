"""Error models and exception classes for the IDE orchestration API."""

import time
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class ErrorType(str, Enum):
    """Error type enumeration."""

    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    RESOURCE_NOT_FOUND = "resource_not_found"
    RESOURCE_CONFLICT = "resource_conflict"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    RATE_LIMITED = "rate_limited"
    PROVISIONING_FAILED = "provisioning_failed"
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"
    INTERNAL_SERVER = "internal_server"
    SERVICE_UNAVAILABLE = "service_unavailable"
    EXTERNAL_SERVICE = "external_service"


# Container statuses after which a new container must be started
RESTART_REQUIRED_STATUSES = frozenset({"stopped", "failed", "killed"})


class ErrorDetail(BaseModel):
    """Detailed error information."""

    field: Optional[str] = Field(None, description="Field name for validation errors")
    message: str = Field(..., description="Human-readable error message")
    code: Optional[str] = Field(None, description="Machine-readable error code")


class ErrorResponse(BaseModel):
    """Standardized error response model.

    Container errors also carry the ``containerId`` they concern and whether
    the client has to start a new container to recover.
    """

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True)

    error: str = Field(..., description="Main error message")
    error_type: ErrorType = Field(..., description="Error category")
    details: Optional[List[ErrorDetail]] = Field(
        None, description="Additional error details"
    )
    container_id: Optional[str] = Field(
        None, alias="containerId", description="Container the error concerns"
    )
    requires_restart: Optional[bool] = Field(
        None,
        alias="requiresRestart",
        description="Whether a new container must be started to continue",
    )
    retry_after: Optional[int] = Field(
        None, alias="retryAfter", description="Seconds to wait before retrying"
    )
    request_id: Optional[str] = Field(
        None, description="Request identifier for tracking"
    )
    timestamp: float = Field(default_factory=time.time, description="Error timestamp")


# Custom Exception Classes


class OrchestratorException(Exception):
    """Base exception for the IDE orchestration API."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INTERNAL_SERVER,
        status_code: int = 500,
        details: Optional[List[ErrorDetail]] = None,
        request_id: Optional[str] = None,
        container_id: Optional[str] = None,
        retry_after: Optional[int] = None,
    ):
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.details = details or []
        self.request_id = request_id
        self.container_id = container_id
        self.retry_after = retry_after
        super().__init__(message)

    @property
    def requires_restart(self) -> bool:
        return False

    def to_response(self) -> ErrorResponse:
        """Convert exception to error response model."""
        return ErrorResponse(
            error=self.message,
            error_type=self.error_type,
            details=self.details if self.details else None,
            container_id=self.container_id,
            requires_restart=self.requires_restart if self.container_id else None,
            retry_after=self.retry_after,
            request_id=self.request_id,
        )


class ValidationError(OrchestratorException):
    """Request validation errors."""

    def __init__(self, message: str = "Validation failed", **kwargs):
        super().__init__(
            message=message, error_type=ErrorType.VALIDATION, status_code=400, **kwargs
        )


class InvalidContainerIdError(OrchestratorException):
    """A container ID failed DNS-label validation."""

    def __init__(self, container_id: str, **kwargs):
        super().__init__(
            container_id=container_id,
            message=f"Invalid container ID: {container_id!r}",
            error_type=ErrorType.VALIDATION,
            status_code=400,
            details=[
                ErrorDetail(
                    field="container_id",
                    message="Must be 4-32 lowercase alphanumeric characters or "
                    "hyphens, not starting or ending with a hyphen",
                    code="invalid_container_id",
                )
            ],
            **kwargs,
        )


class AllocationExhaustedError(OrchestratorException):
    """No unused container ID could be generated."""

    def __init__(self, attempts: int, **kwargs):
        self.attempts = attempts
        super().__init__(
            message=f"Failed to generate unique container ID after {attempts} attempts",
            error_type=ErrorType.RESOURCE_EXHAUSTED,
            status_code=503,
            **kwargs,
        )


class ContainerNotFoundError(OrchestratorException):
    """Container is not known to the orchestrator."""

    def __init__(self, container_id: str, **kwargs):
        super().__init__(
            container_id=container_id,
            message=f"Container {container_id} not found",
            error_type=ErrorType.RESOURCE_NOT_FOUND,
            status_code=404,
            **kwargs,
        )

    @property
    def requires_restart(self) -> bool:
        return True


class ContainerNotRunningError(OrchestratorException):
    """Operation requires a live container but its last known status is terminal."""

    def __init__(self, container_id: str, status: str, **kwargs):
        self.status = status
        super().__init__(
            container_id=container_id,
            message=(
                f"Container {container_id} is {status}; "
                "start a new container before running code"
            ),
            error_type=ErrorType.RESOURCE_CONFLICT,
            status_code=409,
            **kwargs,
        )

    @property
    def requires_restart(self) -> bool:
        return self.status in RESTART_REQUIRED_STATUSES


class ContainerNotTerminalError(OrchestratorException):
    """Operation requires a container in a terminal state."""

    def __init__(self, container_id: str, status: str, **kwargs):
        self.status = status
        super().__init__(
            container_id=container_id,
            message=f"Container {container_id} is still {status}",
            error_type=ErrorType.RESOURCE_CONFLICT,
            status_code=409,
            **kwargs,
        )


class InvalidTransitionError(OrchestratorException):
    """Illegal container state machine transition."""

    def __init__(self, container_id: str, current: str, target: str, **kwargs):
        self.current = current
        self.target = target
        super().__init__(
            container_id=container_id,
            message=f"Container {container_id} cannot move from {current} to {target}",
            error_type=ErrorType.RESOURCE_CONFLICT,
            status_code=409,
            **kwargs,
        )


class ConcurrentModificationError(OrchestratorException):
    """Another writer updated the container first."""

    def __init__(self, container_id: str, **kwargs):
        super().__init__(
            container_id=container_id,
            message=f"Container {container_id} was modified concurrently, retry the request",
            error_type=ErrorType.RESOURCE_CONFLICT,
            status_code=409,
            **kwargs,
        )


class ProvisioningError(OrchestratorException):
    """The runtime backend failed to create a container."""

    def __init__(self, message: str = "Failed to start container", **kwargs):
        super().__init__(
            message=message,
            error_type=ErrorType.PROVISIONING_FAILED,
            status_code=502,
            **kwargs,
        )


class ContainerStopFailedError(OrchestratorException):
    """The runtime backend failed to tear a container down."""

    def __init__(self, container_id: str, reason: str, **kwargs):
        super().__init__(
            container_id=container_id,
            message=f"Failed to stop container {container_id}: {reason}",
            error_type=ErrorType.EXTERNAL_SERVICE,
            status_code=502,
            **kwargs,
        )


class ExecutionError(OrchestratorException):
    """The container's run endpoint reported a failure."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_type=ErrorType.EXECUTION_FAILED,
            status_code=502,
            **kwargs,
        )


class RuntimeTimeoutError(OrchestratorException):
    """A bounded call into the runtime or a container timed out."""

    def __init__(self, operation: str, timeout: float, **kwargs):
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            message=f"Runtime {operation} timed out after {timeout:g}s",
            error_type=ErrorType.TIMEOUT,
            status_code=504,
            **kwargs,
        )


class ServiceUnavailableError(OrchestratorException):
    """Service unavailable errors."""

    def __init__(self, service: str, message: str = None, **kwargs):
        error_message = message or f"{service} service is currently unavailable"
        super().__init__(
            message=error_message,
            error_type=ErrorType.SERVICE_UNAVAILABLE,
            status_code=503,
            **kwargs,
        )


class RateLimitExceededError(OrchestratorException):
    """Too many requests for one API key within the current window."""

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        retry_after: int,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.headers = headers or {}
        super().__init__(
            message=(
                f"Rate limit of {limit} requests per {window_seconds}s exceeded, "
                f"retry in {retry_after}s"
            ),
            error_type=ErrorType.RATE_LIMITED,
            status_code=429,
            retry_after=retry_after,
            **kwargs,
        )


class CapacityExceededError(OrchestratorException):
    """The host cannot take another container right now."""

    def __init__(self, message: str, retry_after: int = 30, **kwargs):
        super().__init__(
            message=message,
            error_type=ErrorType.RESOURCE_EXHAUSTED,
            status_code=503,
            retry_after=retry_after,
            details=[ErrorDetail(message=message, code="resource_limit_exceeded")],
            **kwargs,
        )
