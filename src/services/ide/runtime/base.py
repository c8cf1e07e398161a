"""Runtime backend interface.

A runtime backend owns the actual compute resource behind an IDE container.
Backends translate their own status vocabulary into ``RuntimeState``; the
lifecycle manager never sees backend-specific strings.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class RuntimeState(str, Enum):
    """Backend-neutral view of a runtime resource."""

    PROVISIONING = "provisioning"
    RUNNING = "running"
    EXITED = "exited"
    MISSING = "missing"
    ERROR = "error"


@dataclass
class ProvisionSpec:
    """Everything a backend needs to create one IDE container."""

    container_id: str
    image: str
    environment: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    network: Optional[str] = None
    cpu_limit: Optional[float] = None
    memory_limit: Optional[int] = None


@dataclass
class RuntimeInspection:
    """Result of inspecting a runtime resource."""

    container_id: str
    state: RuntimeState
    native_status: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None


class RuntimeBackend(ABC):
    """Pluggable create/inspect/destroy/list surface over a container runtime."""

    name: str = "runtime"

    @abstractmethod
    async def create(self, spec: ProvisionSpec) -> str:
        """Create and start the resource. Returns a backend handle."""

    @abstractmethod
    async def inspect(self, container_id: str) -> RuntimeInspection:
        """Report the resource's current state.

        A missing resource is reported as ``MISSING``, never raised.

        Raises:
            ServiceUnavailableError: If the runtime itself could not be
                queried. Callers must leave the container's status as is.
        """

    @abstractmethod
    async def destroy(self, container_id: str) -> None:
        """Remove the resource. Destroying a missing resource succeeds."""

    @abstractmethod
    async def list_ids(self) -> List[str]:
        """IDs of every resource this service owns on the runtime."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass
