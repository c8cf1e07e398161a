"""Host capacity checks run before a new container is provisioned."""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import psutil
import structlog

from ...models.container import ContainerStatus
from ...models.errors import CapacityExceededError
from .state import ContainerStateStore

logger = structlog.get_logger(__name__)

UsageReader = Callable[[], Tuple[float, float]]


def read_host_usage() -> Tuple[float, float]:
    """Return ``(cpu_percent, memory_percent)`` for the host."""
    return psutil.cpu_percent(interval=None), psutil.virtual_memory().percent


@dataclass
class HostUsage:
    cpu_percent: float
    memory_percent: float
    live_containers: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cpu_percent": round(self.cpu_percent, 1),
            "memory_percent": round(self.memory_percent, 1),
            "live_containers": self.live_containers,
        }


class CapacityGuard:
    """Refuses new containers when the host is saturated.

    Memory pressure and the container ceiling are hard limits. High CPU is
    only logged, since IDE workloads are bursty and a busy host can still
    take an idle editor.

    Args:
        state_store: Source of the live container count.
        max_containers: Ceiling on ``starting`` plus ``running`` containers;
            0 means unlimited.
        memory_threshold_percent: Host memory usage at which starts are
            refused; 0 disables the check.
        cpu_threshold_percent: Host CPU usage that triggers a warning;
            0 disables the warning.
        usage_reader: Callable returning ``(cpu_percent, memory_percent)``.
    """

    def __init__(
        self,
        state_store: ContainerStateStore,
        max_containers: int = 0,
        memory_threshold_percent: float = 90.0,
        cpu_threshold_percent: float = 90.0,
        usage_reader: Optional[UsageReader] = None,
    ):
        self.state_store = state_store
        self.max_containers = max_containers
        self.memory_threshold_percent = memory_threshold_percent
        self.cpu_threshold_percent = cpu_threshold_percent
        self._read_usage = usage_reader or read_host_usage

    async def usage(self) -> HostUsage:
        loop = asyncio.get_running_loop()
        cpu, memory = await loop.run_in_executor(None, self._read_usage)
        starting = await self.state_store.list(ContainerStatus.STARTING)
        running = await self.state_store.list(ContainerStatus.RUNNING)
        return HostUsage(
            cpu_percent=cpu,
            memory_percent=memory,
            live_containers=len(starting) + len(running),
        )

    async def ensure_capacity(self) -> HostUsage:
        """Raise ``CapacityExceededError`` if another container would not fit."""
        usage = await self.usage()

        if self.max_containers and usage.live_containers >= self.max_containers:
            logger.warning(
                "Container limit reached",
                limit=self.max_containers,
                **usage.to_dict(),
            )
            raise CapacityExceededError(
                f"Container limit of {self.max_containers} reached"
            )

        if (
            self.memory_threshold_percent
            and usage.memory_percent >= self.memory_threshold_percent
        ):
            logger.warning(
                "Host memory above threshold",
                threshold=self.memory_threshold_percent,
                **usage.to_dict(),
            )
            raise CapacityExceededError(
                f"Host memory usage at {usage.memory_percent:.1f}% "
                f"(limit {self.memory_threshold_percent:g}%)"
            )

        if (
            self.cpu_threshold_percent
            and usage.cpu_percent >= self.cpu_threshold_percent
        ):
            logger.warning(
                "Host CPU above threshold",
                threshold=self.cpu_threshold_percent,
                **usage.to_dict(),
            )

        return usage
