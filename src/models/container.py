"""IDE container data models.

A ``Container`` is the orchestrator's descriptor for one per-user IDE
environment. Its ``generation`` is bumped by the state store on every
persisted update and is used as the compare-and-set stamp for concurrent
mutations.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContainerStatus(str, Enum):
    """Container lifecycle states."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[ContainerStatus] = frozenset(
    {ContainerStatus.STOPPED, ContainerStatus.FAILED, ContainerStatus.KILLED}
)

# stopping -> stopping lets a stop be re-issued after a failed teardown
ALLOWED_TRANSITIONS: Dict[ContainerStatus, FrozenSet[ContainerStatus]] = {
    ContainerStatus.PENDING: frozenset(
        {ContainerStatus.STARTING, ContainerStatus.FAILED}
    ),
    ContainerStatus.STARTING: frozenset(
        {ContainerStatus.RUNNING, ContainerStatus.FAILED, ContainerStatus.STOPPING}
    ),
    ContainerStatus.RUNNING: frozenset(
        {ContainerStatus.STOPPING, ContainerStatus.KILLED, ContainerStatus.FAILED}
    ),
    ContainerStatus.STOPPING: frozenset(
        {ContainerStatus.STOPPED, ContainerStatus.STOPPING}
    ),
    ContainerStatus.STOPPED: frozenset(),
    ContainerStatus.FAILED: frozenset(),
    ContainerStatus.KILLED: frozenset(),
}


class EnvironmentMode(str, Enum):
    """Where a container's endpoints resolve."""

    REMOTE = "remote"
    LOCAL = "local"

    @classmethod
    def from_header(cls, value: Optional[str]) -> "EnvironmentMode":
        """Map the X-IDE-Environment header onto a mode.

        Only an explicit ``local`` selects the local agent; anything else
        (including ``production`` or a missing header) means remote.
        """
        if value and value.strip().lower() == cls.LOCAL.value:
            return cls.LOCAL
        return cls.REMOTE


class ShutdownReason(str, Enum):
    """Why a container left the running state."""

    MANUAL = "manual"
    INACTIVITY = "inactivity"
    ERROR = "error"
    KILLED = "killed"


class ServiceUrls(BaseModel):
    """Externally routable URLs for the services inside a container."""

    model_config = ConfigDict(populate_by_name=True)

    terminal: str
    vnc: str
    web_server: str = Field(..., alias="webServer")
    code_server: str = Field(..., alias="codeServer")


class Container(BaseModel):
    """Descriptor for a single IDE container."""

    model_config = ConfigDict(use_enum_values=False)

    id: str
    owner_key: str
    bucket_ref: str
    region: Optional[str] = None
    user_id: Optional[str] = None
    status: ContainerStatus = ContainerStatus.PENDING
    urls: ServiceUrls
    environment_mode: EnvironmentMode = EnvironmentMode.REMOTE
    created_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    shutdown_reason: Optional[ShutdownReason] = None
    message: Optional[str] = None
    generation: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def can_transition_to(self, target: ContainerStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def transition_to(
        self,
        target: ContainerStatus,
        message: Optional[str] = None,
        reason: Optional[ShutdownReason] = None,
    ) -> "Container":
        """Apply a state machine transition in place.

        Raises:
            InvalidTransitionError: If ``target`` is not reachable from the
                current status.
        """
        if not self.can_transition_to(target):
            raise InvalidTransitionError(self.id, self.status.value, target.value)

        now = utcnow()
        self.status = target
        self.last_seen_at = now
        if message is not None:
            self.message = message
        if reason is not None:
            self.shutdown_reason = reason
        if target == ContainerStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if target.is_terminal:
            self.stopped_at = now
        return self

    def touch(self) -> None:
        self.last_seen_at = utcnow()


class ExecutionRequest(BaseModel):
    """A request to run a file that already exists in a container workspace."""

    container_id: str
    filename: str
    language: str


class ExecutionResult(BaseModel):
    """Outcome reported by a container's run endpoint."""

    container_id: str
    filename: str
    language: str
    status: str
    message: Optional[str] = None
    command: Optional[str] = None
