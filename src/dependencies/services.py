"""Service dependency injection for the IDE orchestration API."""

# Standard library imports
from functools import lru_cache
from typing import Annotated, Optional

# Third-party imports
from fastapi import Depends
import structlog

# Local application imports
from ..config import settings
from ..core.events import EventBus
from ..core.pool import redis_pool
from ..services.ide import (
    ContainerIdAllocator,
    ContainerLifecycleManager,
    ContainerReconciler,
    ContainerStateStore,
    EndpointResolver,
    ExecutionGateway,
    InMemoryIdRegistry,
    InMemoryStateStore,
    RedisIdRegistry,
    RedisStateStore,
    StatusNotifier,
)
from ..services.ide.capacity import CapacityGuard
from ..services.ide.runtime import DockerRuntime, InMemoryRuntime, RuntimeBackend
from ..services.rate_limit import InMemoryRateLimiter, RateLimiter, RedisRateLimiter

logger = structlog.get_logger(__name__)

# Global reference to the reconciler (set by main.py lifespan)
_reconciler: Optional[ContainerReconciler] = None


def set_reconciler(reconciler: Optional[ContainerReconciler]) -> None:
    """Set the global reconciler reference.

    Called by main.py after the reconciler is started in lifespan.
    """
    global _reconciler
    _reconciler = reconciler


def get_reconciler() -> Optional[ContainerReconciler]:
    """Get the reconciler instance (None if disabled)."""
    return _reconciler


@lru_cache()
def get_event_bus() -> EventBus:
    return EventBus(
        max_attempts=settings.notifier_max_attempts,
        retry_backoff=settings.notifier_retry_backoff_seconds,
    )


@lru_cache()
def get_status_notifier() -> StatusNotifier:
    """Get the status notifier shared by the lifecycle manager and SSE streams."""
    return StatusNotifier(
        get_event_bus(), max_queue_size=settings.notifier_queue_size
    )


@lru_cache()
def get_endpoint_resolver() -> EndpointResolver:
    return EndpointResolver(settings.endpoints)


@lru_cache()
def get_runtime_backend() -> RuntimeBackend:
    """Get the container runtime backend selected by RUNTIME_BACKEND."""
    if settings.runtime_backend == "memory":
        logger.warning("Using in-memory runtime backend; containers are simulated")
        return InMemoryRuntime()
    return DockerRuntime(base_url=settings.docker_base_url)


@lru_cache()
def get_state_store() -> ContainerStateStore:
    """Get the container state store selected by STATE_BACKEND."""
    if settings.state_backend == "redis":
        return RedisStateStore(redis_pool.get_client(), settings.redis_key_prefix)
    return InMemoryStateStore()


@lru_cache()
def get_id_allocator() -> ContainerIdAllocator:
    if settings.state_backend == "redis":
        registry = RedisIdRegistry(redis_pool.get_client(), settings.redis_key_prefix)
    else:
        registry = InMemoryIdRegistry()
    return ContainerIdAllocator(
        registry=registry,
        default_length=settings.ide_id_length,
        max_attempts=settings.ide_id_max_attempts,
    )


@lru_cache()
def get_capacity_guard() -> CapacityGuard:
    return CapacityGuard(
        state_store=get_state_store(),
        max_containers=settings.max_containers,
        memory_threshold_percent=settings.capacity_memory_threshold_percent,
        cpu_threshold_percent=settings.capacity_cpu_threshold_percent,
    )


@lru_cache()
def get_lifecycle_manager() -> ContainerLifecycleManager:
    """Get the lifecycle manager with its collaborators wired in."""
    return ContainerLifecycleManager(
        allocator=get_id_allocator(),
        state_store=get_state_store(),
        runtime=get_runtime_backend(),
        resolver=get_endpoint_resolver(),
        notifier=get_status_notifier(),
        config=settings.ide,
        capacity=get_capacity_guard(),
    )


@lru_cache()
def get_execution_gateway() -> ExecutionGateway:
    return ExecutionGateway(
        lifecycle=get_lifecycle_manager(), timeout=settings.execution_timeout
    )


@lru_cache()
def get_rate_limiter() -> Optional[RateLimiter]:
    """Get the request rate limiter, or None when RATE_LIMIT_ENABLED is off."""
    if not settings.rate_limit_enabled:
        return None
    if settings.state_backend == "redis":
        return RedisRateLimiter(
            redis_pool.get_client(),
            limit=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
            key_prefix=settings.redis_key_prefix,
        )
    return InMemoryRateLimiter(
        limit=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


def reset_services() -> None:
    """Drop every cached service instance so the next request rebuilds them."""
    for getter in (
        get_event_bus,
        get_status_notifier,
        get_endpoint_resolver,
        get_runtime_backend,
        get_state_store,
        get_id_allocator,
        get_capacity_guard,
        get_lifecycle_manager,
        get_execution_gateway,
        get_rate_limiter,
    ):
        getter.cache_clear()
    set_reconciler(None)


# Type aliases for dependency injection
LifecycleManagerDep = Annotated[
    ContainerLifecycleManager, Depends(get_lifecycle_manager)
]
ExecutionGatewayDep = Annotated[ExecutionGateway, Depends(get_execution_gateway)]
StatusNotifierDep = Annotated[StatusNotifier, Depends(get_status_notifier)]
RuntimeBackendDep = Annotated[RuntimeBackend, Depends(get_runtime_backend)]
StateStoreDep = Annotated[ContainerStateStore, Depends(get_state_store)]
CapacityGuardDep = Annotated[CapacityGuard, Depends(get_capacity_guard)]
CapacityGuardDep = Annotated[CapacityGuard, Depends(get_capacity_guard)]
