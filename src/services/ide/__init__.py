"""IDE container orchestration services.

This package provides:
- ids.py: Container ID allocation and registries
- runtime/: Runtime backends (Docker, in-memory)
- state.py: Container descriptor stores (in-memory, Redis)
- endpoints.py: Service URL and routing label resolution
- capacity.py: Host capacity checks before provisioning
- lifecycle.py: Container state machine and provisioning
- execution.py: Execution gateway to the in-container web server
- notifier.py: Status/event fan-out to subscribers
- reconciler.py: Background status sweep and retention
"""

from .ids import ContainerIdAllocator, InMemoryIdRegistry, RedisIdRegistry, validate_id
from .endpoints import EndpointResolver
from .state import (
    ContainerStateStore,
    InMemoryStateStore,
    RedisStateStore,
    StaleGenerationError,
)
from .notifier import StatusNotifier
from .capacity import CapacityGuard, HostUsage
from .lifecycle import ContainerLifecycleManager, map_runtime_state
from .execution import ExecutionGateway, resolve_language
from .reconciler import ContainerReconciler

__all__ = [
    "ContainerIdAllocator",
    "InMemoryIdRegistry",
    "RedisIdRegistry",
    "validate_id",
    "EndpointResolver",
    "ContainerStateStore",
    "InMemoryStateStore",
    "RedisStateStore",
    "StaleGenerationError",
    "StatusNotifier",
    "CapacityGuard",
    "HostUsage",
    "ContainerLifecycleManager",
    "map_runtime_state",
    "ExecutionGateway",
    "resolve_language",
    "ContainerReconciler",
]
