"""Dependencies package for the IDE orchestration API.

Backends are chosen by configuration:
- STATE_BACKEND=memory|redis selects the descriptor store and ID registry
- RUNTIME_BACKEND=docker|memory selects the container runtime
- RATE_LIMIT_ENABLED toggles the per-key request limiter (shared in Redis
  when STATE_BACKEND=redis)
"""

from .services import (
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
    get_reconciler,
    set_reconciler,
    reset_services,
    LifecycleManagerDep,
    ExecutionGatewayDep,
    StatusNotifierDep,
    RuntimeBackendDep,
    StateStoreDep,
    CapacityGuardDep,
)


__all__ = [
    "get_event_bus",
    "get_status_notifier",
    "get_endpoint_resolver",
    "get_runtime_backend",
    "get_state_store",
    "get_id_allocator",
    "get_capacity_guard",
    "get_lifecycle_manager",
    "get_execution_gateway",
    "get_rate_limiter",
    "get_reconciler",
    "set_reconciler",
    "reset_services",
    "LifecycleManagerDep",
    "ExecutionGatewayDep",
    "StatusNotifierDep",
    "RuntimeBackendDep",
    "StateStoreDep",
    "CapacityGuardDep",
]
