"""Background status reconciliation.

Polls every live container so crashes and idle reaping are noticed even when
no client is asking, and releases terminal containers nobody acknowledged
within the retention window.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from ...models.container import ContainerStatus, utcnow
from .lifecycle import ContainerLifecycleManager

logger = structlog.get_logger(__name__)


@dataclass
class SweepResult:
    checked: int = 0
    changed: int = 0
    released: int = 0
    errors: int = 0


class ContainerReconciler:
    """Periodic status sweep over all recorded containers."""

    def __init__(
        self,
        lifecycle: ContainerLifecycleManager,
        interval_seconds: float = 15.0,
        retention_minutes: float = 30.0,
    ):
        self.lifecycle = lifecycle
        self.interval_seconds = interval_seconds
        self.retention = timedelta(minutes=retention_minutes)
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.last_sweep: Optional[SweepResult] = None
        self.last_sweep_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Container reconciler started",
            interval_seconds=self.interval_seconds,
            retention_minutes=self.retention.total_seconds() / 60,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Container reconciler stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Reconciler sweep error", error=str(e))

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Run one reconciliation pass."""
        now = now or utcnow()
        result = SweepResult()

        for container in await self.lifecycle.list_containers():
            try:
                if container.is_terminal:
                    finished_at = container.stopped_at or container.last_seen_at
                    if now - finished_at >= self.retention:
                        await self.lifecycle.acknowledge(container.id)
                        result.released += 1
                        logger.info(
                            "Released expired container",
                            container_id=container.id,
                            status=container.status.value,
                        )
                    continue

                if container.status not in (
                    ContainerStatus.STARTING,
                    ContainerStatus.RUNNING,
                ):
                    continue

                result.checked += 1
                refreshed = await self.lifecycle.check_status(container.id)
                if refreshed.status != container.status:
                    result.changed += 1
            except Exception as e:
                result.errors += 1
                logger.warning(
                    "Failed to reconcile container",
                    container_id=container.id,
                    error=str(e),
                )

        self.last_sweep = result
        self.last_sweep_at = now
        if result.changed or result.released or result.errors:
            logger.info(
                "Reconciler sweep finished",
                checked=result.checked,
                changed=result.changed,
                released=result.released,
                errors=result.errors,
            )
        return result
