"""IDE container lifecycle management.

Owns the container state machine. Provisioning runs in a background task so
``start_container`` returns immediately with a ``starting`` descriptor; the
task's result is applied only while the same descriptor is still
``starting``; anything else means the start was superseded.
"""

import asyncio
import time
from datetime import datetime
from typing import Awaitable, Dict, List, Optional, Tuple, TypeVar

import structlog

from ...config.ide import IDEConfig
from ...core.events import ContainerProvisioned, ContainerReleased
from ...core.locks import KeyedLock
from ...models.container import (
    Container,
    ContainerStatus,
    EnvironmentMode,
    ShutdownReason,
)
from ...models.errors import (
    ConcurrentModificationError,
    ContainerNotFoundError,
    ContainerNotTerminalError,
    ContainerStopFailedError,
    InvalidContainerIdError,
    OrchestratorException,
    RuntimeTimeoutError,
)
from .capacity import CapacityGuard
from .endpoints import EndpointResolver
from .ids import ContainerIdAllocator
from .notifier import StatusNotifier
from .runtime import ProvisionSpec, RuntimeBackend, RuntimeState
from .state import ContainerStateStore, StaleGenerationError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

COMPLETION_ATTEMPTS = 3

RUNTIME_STATUS_MAP: Dict[ContainerStatus, Dict[RuntimeState, ContainerStatus]] = {
    ContainerStatus.STARTING: {
        RuntimeState.PROVISIONING: ContainerStatus.STARTING,
        RuntimeState.RUNNING: ContainerStatus.RUNNING,
        RuntimeState.EXITED: ContainerStatus.FAILED,
        RuntimeState.MISSING: ContainerStatus.FAILED,
        RuntimeState.ERROR: ContainerStatus.FAILED,
    },
    ContainerStatus.RUNNING: {
        RuntimeState.PROVISIONING: ContainerStatus.RUNNING,
        RuntimeState.RUNNING: ContainerStatus.RUNNING,
        RuntimeState.EXITED: ContainerStatus.KILLED,
        RuntimeState.MISSING: ContainerStatus.KILLED,
        RuntimeState.ERROR: ContainerStatus.FAILED,
    },
}


def map_runtime_state(
    current: ContainerStatus, runtime_state: RuntimeState
) -> ContainerStatus:
    """Translate a runtime observation into the container's next status."""
    return RUNTIME_STATUS_MAP.get(current, {}).get(runtime_state, current)


class ContainerLifecycleManager:
    """Starts, tracks and stops IDE containers.

    Mutations for one owner key or one container are serialized with keyed
    locks, and every persisted update is a compare-and-set on the
    descriptor's generation.
    """

    def __init__(
        self,
        allocator: ContainerIdAllocator,
        state_store: ContainerStateStore,
        runtime: RuntimeBackend,
        resolver: EndpointResolver,
        notifier: Optional[StatusNotifier] = None,
        config: Optional[IDEConfig] = None,
        capacity: Optional[CapacityGuard] = None,
    ):
        self.allocator = allocator
        self.state_store = state_store
        self.runtime = runtime
        self.resolver = resolver
        self.notifier = notifier or StatusNotifier()
        self.config = config or IDEConfig()
        self.capacity = capacity
        self._locks = KeyedLock()
        self._provisioning: Dict[str, asyncio.Task] = {}
        # Descriptors discarded while their create call was still running
        self._deferred_releases: Dict[str, Container] = {}

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    async def initialize(self) -> int:
        """Reserve the IDs of containers already present on the runtime.

        Returns:
            Number of IDs reserved.
        """
        runtime_ids = await self._bounded(
            self.runtime.list_ids(), self.config.runtime_inspect_timeout, "list"
        )
        reserved = 0
        for container_id in runtime_ids:
            if not self.allocator.validate_id(container_id):
                logger.warning(
                    "Skipping runtime container with invalid ID",
                    container_id=container_id,
                )
                continue
            if await self.allocator.mark_id_as_used(container_id):
                reserved += 1

        logger.info(
            "Reserved existing container IDs",
            runtime=self.runtime.name,
            found=len(runtime_ids),
            reserved=reserved,
        )
        return reserved

    async def shutdown(self) -> None:
        """Cancel in-flight provisioning tasks."""
        tasks = list(self._provisioning.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._provisioning.clear()
        self._deferred_releases.clear()
        logger.info("Lifecycle manager shut down", cancelled_provisioning=len(tasks))

    @property
    def provisioning_count(self) -> int:
        return len(self._provisioning)

    def is_provisioning(self, container_id: str) -> bool:
        return container_id in self._provisioning

    async def wait_for_provisioning(self, container_id: str) -> None:
        """Wait for a container's background provisioning task, if any."""
        task = self._provisioning.get(container_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_container(
        self,
        owner_key: str,
        bucket_ref: str,
        environment_mode: EnvironmentMode = EnvironmentMode.REMOTE,
        *,
        region: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Container:
        """Return the owner's active container, provisioning one if needed."""
        container, _ = await self.ensure_container(
            owner_key,
            bucket_ref,
            environment_mode,
            region=region,
            user_id=user_id,
        )
        return container

    async def ensure_container(
        self,
        owner_key: str,
        bucket_ref: str,
        environment_mode: EnvironmentMode = EnvironmentMode.REMOTE,
        *,
        region: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Tuple[Container, bool]:
        """Idempotent start.

        Returns:
            The container and whether it was reused rather than created.

        Raises:
            CapacityExceededError: If a new container is needed but the host
                is out of capacity.
        """
        async with self._locks.acquire(f"owner:{owner_key}"):
            existing = await self.state_store.get_active_for_owner(owner_key)
            if existing is not None:
                reused = await self._reuse_if_live(existing.id)
                if reused is not None:
                    logger.info(
                        "Reusing active container",
                        container_id=reused.id,
                        owner_key=owner_key,
                        status=reused.status.value,
                    )
                    return reused, True
                logger.info(
                    "Active container ended before reuse",
                    container_id=existing.id,
                    owner_key=owner_key,
                )

            if self.capacity is not None:
                await self.capacity.ensure_capacity()

            container_id = await self._allocate_id()
            container = Container(
                id=container_id,
                owner_key=owner_key,
                bucket_ref=bucket_ref,
                region=region,
                user_id=user_id,
                urls=self.resolver.resolve_endpoints(container_id, environment_mode),
                environment_mode=environment_mode,
            )
            try:
                await self._insert(container)
                container.transition_to(ContainerStatus.STARTING)
                await self._save(container)
                await self.state_store.set_owner(owner_key, container_id)
            except Exception:
                await self.allocator.release_id(container_id)
                raise

            self._schedule_provisioning(container)
            logger.info(
                "Container start scheduled",
                container_id=container_id,
                owner_key=owner_key,
                environment_mode=environment_mode.value,
            )
            return container, False

    async def _reuse_if_live(self, container_id: str) -> Optional[Container]:
        """Touch a container under its lock, or return None if it is no longer live.

        The owner lookup happens outside the container lock, so a stop,
        crash report or acknowledgement can land in between.
        """
        async with self._locks.acquire(f"container:{container_id}"):
            for _ in range(COMPLETION_ATTEMPTS):
                current = await self.state_store.get(container_id)
                if current is None or current.status not in (
                    ContainerStatus.STARTING,
                    ContainerStatus.RUNNING,
                ):
                    return None
                current.touch()
                try:
                    return await self.state_store.save(current, current.generation)
                except StaleGenerationError:
                    continue
        raise ConcurrentModificationError(container_id)

    async def _allocate_id(self) -> str:
        if self.config.ide_readable_ids:
            return await self.allocator.generate_readable_id()
        return await self.allocator.generate_unique_id(
            self.config.ide_id_length, self.config.ide_id_max_attempts
        )

    async def _insert(self, container: Container) -> None:
        # A released ID can still have an old terminal descriptor on record
        previous = await self.state_store.get(container.id)
        expected = None
        if previous is not None:
            if not previous.is_terminal:
                raise ConcurrentModificationError(container.id)
            expected = previous.generation
        try:
            await self.state_store.save(container, expected)
        except StaleGenerationError:
            raise ConcurrentModificationError(container.id)

    def build_provision_spec(self, container: Container) -> ProvisionSpec:
        cfg = self.resolver.config
        environment = {
            "CONTAINER_ID": container.id,
            "CODE_BASE_PATH": f"/{cfg.code_server_path}/{container.id}",
            "VNC_BASE_PATH": f"/{cfg.vnc_path}/{container.id}",
            "INACTIVITY_TIMEOUT_SECONDS": str(self.config.inactivity_timeout_seconds),
            "MANAGEMENT_API_URL": self.config.management_api_url,
            "S3_BUCKET": container.bucket_ref,
        }
        if container.region:
            environment["S3_REGION"] = container.region

        labels = self.resolver.routing_labels(container.id)
        labels["ide.owner_key"] = container.owner_key

        return ProvisionSpec(
            container_id=container.id,
            image=self.config.ide_container_image,
            environment=environment,
            labels=labels,
            network=self.config.ide_network,
            cpu_limit=self.config.container_cpu_limit,
            memory_limit=self.config.container_memory_limit,
        )

    def _schedule_provisioning(self, container: Container) -> None:
        task = asyncio.create_task(
            self._provision(container.id, container.owner_key, container.created_at),
            name=f"provision-{container.id}",
        )
        self._provisioning[container.id] = task

    async def _provision(
        self, container_id: str, owner_key: str, created_at: datetime
    ) -> None:
        started = time.perf_counter()
        error: Optional[str] = None
        created = False
        try:
            try:
                container = await self.state_store.get(container_id)
                if (
                    container is not None
                    and container.created_at == created_at
                    and container.status == ContainerStatus.STARTING
                ):
                    await self._bounded(
                        self.runtime.create(self.build_provision_spec(container)),
                        self.config.runtime_create_timeout,
                        "create",
                    )
                    created = True
            except OrchestratorException as e:
                error = e.message
            except Exception as e:
                error = f"Provisioning failed: {e}"

            duration_ms = (time.perf_counter() - started) * 1000
            await self._complete_provisioning(
                container_id, owner_key, created_at, created, error, duration_ms
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Failed to record provisioning result",
                container_id=container_id,
                error=str(e),
                exc_info=True,
            )
        finally:
            if self._provisioning.get(container_id) is asyncio.current_task():
                del self._provisioning[container_id]

    async def _complete_provisioning(
        self,
        container_id: str,
        owner_key: str,
        created_at: datetime,
        created: bool,
        error: Optional[str],
        duration_ms: float,
    ) -> None:
        async with self._locks.acquire(f"container:{container_id}"):
            for attempt in range(1, COMPLETION_ATTEMPTS + 1):
                current = await self.state_store.get(container_id)
                if (
                    current is None
                    or current.created_at != created_at
                    or current.status != ContainerStatus.STARTING
                ):
                    await self._discard_stale_result(container_id, current, created)
                    return

                if error is not None:
                    current.transition_to(
                        ContainerStatus.FAILED,
                        message=error,
                        reason=ShutdownReason.ERROR,
                    )
                else:
                    current.transition_to(ContainerStatus.RUNNING, message=None)
                try:
                    await self.state_store.save(current, current.generation)
                    break
                except StaleGenerationError:
                    # A concurrent reuse touched the descriptor; re-read and retry
                    logger.debug(
                        "Provisioning result lost compare-and-set",
                        container_id=container_id,
                        attempt=attempt,
                    )
            else:
                logger.error(
                    "Could not record provisioning result",
                    container_id=container_id,
                    attempts=COMPLETION_ATTEMPTS,
                )
                return

        if error is not None:
            logger.error(
                "Container provisioning failed",
                container_id=container_id,
                owner_key=owner_key,
                error=error,
                duration_ms=round(duration_ms, 1),
            )
            await self.notifier.on_state_change(
                container_id,
                ContainerStatus.STARTING.value,
                ContainerStatus.FAILED.value,
                reason=ShutdownReason.ERROR.value,
                owner_key=owner_key,
                message=error,
            )
            return

        logger.info(
            "Container provisioned",
            container_id=container_id,
            owner_key=owner_key,
            duration_ms=round(duration_ms, 1),
        )
        await self.notifier.publish(
            ContainerProvisioned(
                container_id=container_id, owner_key=owner_key, duration_ms=duration_ms
            )
        )

    async def _discard_stale_result(
        self, container_id: str, current: Optional[Container], created: bool
    ) -> None:
        logger.info(
            "Discarding stale provisioning result",
            container_id=container_id,
            current_status=current.status.value if current else None,
        )
        deferred = self._deferred_releases.pop(container_id, None)
        if created and (
            current is None
            or current.is_terminal
            or current.status == ContainerStatus.STOPPING
        ):
            await self._destroy_orphan(container_id)
        # The ID stays reserved until create has settled
        if deferred is not None:
            await self._release(deferred)
        elif current is not None and current.status == ContainerStatus.STOPPED:
            await self._release(current)

    async def _destroy_orphan(self, container_id: str) -> None:
        try:
            await self._bounded(
                self.runtime.destroy(container_id),
                self.config.runtime_destroy_timeout,
                "destroy",
            )
            logger.info("Destroyed orphaned runtime container", container_id=container_id)
        except Exception as e:
            logger.error(
                "Failed to destroy orphaned runtime container",
                container_id=container_id,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def check_status(self, container_id: str) -> Container:
        """Refresh a container's status from the runtime.

        Transitions the client did not ask for (a crash, a reaped container,
        a failed start) are reported to the notifier before returning.
        """
        self._require_valid_id(container_id)
        async with self._locks.acquire(f"container:{container_id}"):
            container = await self._get_or_raise(container_id)
            if container.status not in RUNTIME_STATUS_MAP:
                return container
            if self.is_provisioning(container_id):
                # The create call has not returned yet
                return container

            inspection = await self._bounded(
                self.runtime.inspect(container_id),
                self.config.runtime_inspect_timeout,
                "inspect",
            )
            target = map_runtime_state(container.status, inspection.state)
            if target == container.status:
                return container

            previous = container.status
            reason = (
                ShutdownReason.KILLED
                if target == ContainerStatus.KILLED
                else ShutdownReason.ERROR
            )
            message = None
            if target != ContainerStatus.RUNNING:
                message = inspection.error or (
                    f"Runtime reported {inspection.native_status or inspection.state.value}"
                )
                container.transition_to(target, message=message, reason=reason)
            else:
                container.transition_to(target)
            await self._save(container)

        logger.info(
            "Container status changed",
            container_id=container_id,
            previous_status=previous.value,
            status=target.value,
            runtime_state=inspection.state.value,
        )
        if target in (ContainerStatus.FAILED, ContainerStatus.KILLED):
            await self.notifier.on_state_change(
                container_id,
                previous.value,
                target.value,
                reason=reason.value,
                owner_key=container.owner_key,
                message=message,
            )
        return container

    # ------------------------------------------------------------------
    # Stop / shutdown reports / acknowledgement
    # ------------------------------------------------------------------

    async def stop_container(self, container_id: str) -> Container:
        """Tear a container down and release its ID.

        Raises:
            ContainerStopFailedError: If the runtime could not remove it. The
                container stays ``stopping`` so the stop can be retried.
        """
        self._require_valid_id(container_id)
        async with self._locks.acquire(f"container:{container_id}"):
            container = await self._get_or_raise(container_id)
            if container.status == ContainerStatus.STOPPED:
                return container
            if container.status in (ContainerStatus.FAILED, ContainerStatus.KILLED):
                # Nothing left to stop; treat as an acknowledgement
                await self._discard(container)
                return container

            container.transition_to(ContainerStatus.STOPPING)
            await self._save(container)

            try:
                await self._bounded(
                    self.runtime.destroy(container_id),
                    self.config.runtime_destroy_timeout,
                    "destroy",
                )
            except RuntimeTimeoutError:
                logger.error("Container destroy timed out", container_id=container_id)
                raise
            except Exception as e:
                logger.error(
                    "Container destroy failed", container_id=container_id, error=str(e)
                )
                raise ContainerStopFailedError(container_id, str(e)) from e

            container.transition_to(
                ContainerStatus.STOPPED, reason=ShutdownReason.MANUAL
            )
            await self._save(container)
            if not self.is_provisioning(container_id):
                await self._release(container)

        logger.info(
            "Container stopped", container_id=container_id, owner_key=container.owner_key
        )
        return container

    async def report_shutdown(
        self,
        container_id: str,
        reason: ShutdownReason = ShutdownReason.INACTIVITY,
        message: Optional[str] = None,
    ) -> Container:
        """Record a shutdown initiated by the container itself (idle reaping)."""
        self._require_valid_id(container_id)
        async with self._locks.acquire(f"container:{container_id}"):
            container = await self._get_or_raise(container_id)
            if container.is_terminal or container.status == ContainerStatus.STOPPING:
                return container

            try:
                await self._bounded(
                    self.runtime.destroy(container_id),
                    self.config.runtime_destroy_timeout,
                    "destroy",
                )
            except Exception as e:
                # The container is already on its way down; record the outcome anyway
                logger.warning(
                    "Destroy after shutdown report failed",
                    container_id=container_id,
                    error=str(e),
                )

            previous = container.status
            target = (
                ContainerStatus.KILLED
                if previous == ContainerStatus.RUNNING
                else ContainerStatus.FAILED
            )
            message = message or f"Container shut down ({reason.value})"
            container.transition_to(target, message=message, reason=reason)
            await self._save(container)

        await self.notifier.on_state_change(
            container_id,
            previous.value,
            target.value,
            reason=reason.value,
            owner_key=container.owner_key,
            message=message,
        )
        return container

    async def acknowledge(self, container_id: str) -> None:
        """Release a terminal container once its owner has seen the outcome.

        Raises:
            ContainerNotTerminalError: If the container is still live.
        """
        self._require_valid_id(container_id)
        async with self._locks.acquire(f"container:{container_id}"):
            container = await self._get_or_raise(container_id)
            if not container.is_terminal:
                raise ContainerNotTerminalError(container_id, container.status.value)
            await self._discard(container)

        logger.info(
            "Container acknowledged",
            container_id=container_id,
            status=container.status.value,
        )

    async def _discard(self, container: Container) -> None:
        if self.is_provisioning(container.id):
            # The provisioning task destroys whatever create produced and
            # releases the ID once it settles
            self._deferred_releases[container.id] = container
            await self.state_store.delete(container.id)
            logger.info(
                "Release deferred until provisioning settles",
                container_id=container.id,
            )
            return
        if container.status != ContainerStatus.STOPPED:
            # Crashed containers may still exist on the runtime in an exited state
            try:
                await self._bounded(
                    self.runtime.destroy(container.id),
                    self.config.runtime_destroy_timeout,
                    "destroy",
                )
            except RuntimeTimeoutError:
                raise
            except Exception as e:
                raise ContainerStopFailedError(container.id, str(e)) from e
        await self._release(container)
        await self.state_store.delete(container.id)

    async def _release(self, container: Container) -> None:
        released = await self.allocator.release_id(container.id)
        await self.state_store.clear_owner(container.owner_key, container.id)
        if released:
            await self.notifier.publish(
                ContainerReleased(
                    container_id=container.id,
                    owner_key=container.owner_key,
                    final_status=container.status.value,
                )
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_container(self, container_id: str) -> Container:
        self._require_valid_id(container_id)
        return await self._get_or_raise(container_id)

    async def list_containers(
        self, status: Optional[ContainerStatus] = None
    ) -> List[Container]:
        containers = await self.state_store.list(status)
        return sorted(containers, key=lambda c: c.created_at)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_valid_id(self, container_id: str) -> None:
        if not self.allocator.validate_id(container_id):
            raise InvalidContainerIdError(container_id)

    async def _get_or_raise(self, container_id: str) -> Container:
        container = await self.state_store.get(container_id)
        if container is None:
            raise ContainerNotFoundError(container_id)
        return container

    async def _save(self, container: Container) -> Container:
        try:
            return await self.state_store.save(container, container.generation)
        except StaleGenerationError:
            logger.warning(
                "Lost compare-and-set on container", container_id=container.id
            )
            raise ConcurrentModificationError(container.id)

    @staticmethod
    async def _bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise RuntimeTimeoutError(operation, timeout)
