"""Process-local runtime backend for development and tests."""

import asyncio
from typing import Dict, List, Optional

import structlog

from .base import ProvisionSpec, RuntimeBackend, RuntimeInspection, RuntimeState

logger = structlog.get_logger(__name__)


class InMemoryRuntime(RuntimeBackend):
    """Keeps provisioned specs in a dict.

    New resources report ``running`` by default. Tests can simulate crashes
    or slow starts with ``set_state`` and ``create_delay``, and failures with
    ``fail_create``, ``fail_inspect`` and ``fail_destroy``.
    """

    name = "memory"

    def __init__(
        self,
        initial_state: RuntimeState = RuntimeState.RUNNING,
        create_delay: float = 0.0,
    ):
        self.initial_state = initial_state
        self.create_delay = create_delay
        self.fail_create: Optional[Exception] = None
        self.fail_inspect: Optional[Exception] = None
        self.fail_destroy: Optional[Exception] = None
        self.specs: Dict[str, ProvisionSpec] = {}
        self._states: Dict[str, RuntimeState] = {}
        self.create_calls = 0
        self.destroy_calls = 0

    async def create(self, spec: ProvisionSpec) -> str:
        self.create_calls += 1
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.fail_create is not None:
            raise self.fail_create
        self.specs[spec.container_id] = spec
        self._states[spec.container_id] = self.initial_state
        logger.debug("In-memory container created", container_id=spec.container_id)
        return f"ide-{spec.container_id}"

    async def inspect(self, container_id: str) -> RuntimeInspection:
        if self.fail_inspect is not None:
            raise self.fail_inspect
        state = self._states.get(container_id, RuntimeState.MISSING)
        return RuntimeInspection(
            container_id=container_id, state=state, native_status=state.value
        )

    async def destroy(self, container_id: str) -> None:
        self.destroy_calls += 1
        if self.fail_destroy is not None:
            raise self.fail_destroy
        self.specs.pop(container_id, None)
        self._states.pop(container_id, None)

    async def list_ids(self) -> List[str]:
        return list(self._states)

    def set_state(self, container_id: str, state: RuntimeState) -> None:
        """Force a resource into a state; MISSING removes it."""
        if state == RuntimeState.MISSING:
            self.specs.pop(container_id, None)
            self._states.pop(container_id, None)
        else:
            self._states[container_id] = state
