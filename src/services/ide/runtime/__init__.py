"""Runtime backends for IDE containers.

- base.py: RuntimeBackend interface and backend-neutral state types
- docker.py: Docker SDK backend
- memory.py: process-local backend for development and tests
"""

from .base import ProvisionSpec, RuntimeBackend, RuntimeInspection, RuntimeState
from .docker import DockerRuntime, map_docker_status
from .memory import InMemoryRuntime

__all__ = [
    "ProvisionSpec",
    "RuntimeBackend",
    "RuntimeInspection",
    "RuntimeState",
    "DockerRuntime",
    "map_docker_status",
    "InMemoryRuntime",
]
