"""Request/response models for the IDE HTTP surface."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .container import (
    Container,
    ContainerStatus,
    EnvironmentMode,
    ServiceUrls,
    ShutdownReason,
)


class StartContainerRequest(BaseModel):
    """Body of POST /ide/start-container."""

    model_config = ConfigDict(populate_by_name=True)

    bucket_ref: str = Field(..., alias="bucketRef", min_length=1)
    region: Optional[str] = Field(default=None)
    user_id: str = Field(..., alias="userId", min_length=1)
    environment_mode: Optional[EnvironmentMode] = Field(
        default=None, alias="environmentMode"
    )
    owner_key: Optional[str] = Field(
        default=None,
        alias="ownerKey",
        description="Explicit owner key; defaults to '{userId}:{bucketRef}'",
    )

    def resolve_owner_key(self) -> str:
        return self.owner_key or f"{self.user_id}:{self.bucket_ref}"


class ContainerResponse(BaseModel):
    """Client-facing view of a container descriptor."""

    model_config = ConfigDict(populate_by_name=True)

    container_id: str = Field(..., alias="containerId")
    status: ContainerStatus
    urls: ServiceUrls
    environment_mode: EnvironmentMode = Field(..., alias="environmentMode")
    created_at: datetime = Field(..., alias="createdAt")
    last_seen_at: datetime = Field(..., alias="lastSeenAt")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    stopped_at: Optional[datetime] = Field(default=None, alias="stoppedAt")
    shutdown_reason: Optional[ShutdownReason] = Field(
        default=None, alias="shutdownReason"
    )
    message: Optional[str] = None
    is_reused: bool = Field(default=False, alias="isReused")
    requires_restart: bool = Field(
        default=False,
        alias="requiresRestart",
        description="True when the client must discard this reference and start again",
    )

    @classmethod
    def from_container(
        cls, container: Container, is_reused: bool = False
    ) -> "ContainerResponse":
        return cls(
            container_id=container.id,
            status=container.status,
            urls=container.urls,
            environment_mode=container.environment_mode,
            created_at=container.created_at,
            last_seen_at=container.last_seen_at,
            started_at=container.started_at,
            stopped_at=container.stopped_at,
            shutdown_reason=container.shutdown_reason,
            message=container.message,
            is_reused=is_reused,
            requires_restart=container.status
            in (ContainerStatus.FAILED, ContainerStatus.KILLED),
        )


class ContainerListResponse(BaseModel):
    containers: List[ContainerResponse]
    total: int


class RunRequest(BaseModel):
    """Body of POST /ide/{containerId}/run."""

    filename: str = Field(..., min_length=1, max_length=255)
    language: Optional[str] = Field(default=None)


class RunResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    container_id: str = Field(..., alias="containerId")
    filename: str
    language: str
    status: str
    message: Optional[str] = None
    command: Optional[str] = None


class InactivityShutdownRequest(BaseModel):
    reason: Optional[str] = Field(default=None)
