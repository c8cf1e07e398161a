"""Data models for the IDE orchestration API."""

from .container import (
    Container,
    ContainerStatus,
    EnvironmentMode,
    ExecutionRequest,
    ExecutionResult,
    ServiceUrls,
    ShutdownReason,
    TERMINAL_STATUSES,
)
from .ide import (
    StartContainerRequest,
    ContainerResponse,
    ContainerListResponse,
    RunRequest,
    RunResponse,
    InactivityShutdownRequest,
)
from .errors import (
    ErrorType,
    ErrorDetail,
    ErrorResponse,
    OrchestratorException,
    ValidationError,
    InvalidContainerIdError,
    AllocationExhaustedError,
    ContainerNotFoundError,
    ContainerNotRunningError,
    ContainerNotTerminalError,
    InvalidTransitionError,
    ConcurrentModificationError,
    ProvisioningError,
    ContainerStopFailedError,
    ExecutionError,
    RuntimeTimeoutError,
    ServiceUnavailableError,
    RateLimitExceededError,
    CapacityExceededError,
)

__all__ = [
    # Container models
    "Container",
    "ContainerStatus",
    "EnvironmentMode",
    "ExecutionRequest",
    "ExecutionResult",
    "ServiceUrls",
    "ShutdownReason",
    "TERMINAL_STATUSES",
    # HTTP models
    "StartContainerRequest",
    "ContainerResponse",
    "ContainerListResponse",
    "RunRequest",
    "RunResponse",
    "InactivityShutdownRequest",
    # Error models
    "ErrorType",
    "ErrorDetail",
    "ErrorResponse",
    "OrchestratorException",
    "ValidationError",
    "InvalidContainerIdError",
    "AllocationExhaustedError",
    "ContainerNotFoundError",
    "ContainerNotRunningError",
    "ContainerNotTerminalError",
    "InvalidTransitionError",
    "ConcurrentModificationError",
    "ProvisioningError",
    "ContainerStopFailedError",
    "ExecutionError",
    "RuntimeTimeoutError",
    "ServiceUnavailableError",
    "RateLimitExceededError",
    "CapacityExceededError",
]
