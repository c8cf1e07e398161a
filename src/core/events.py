"""In-process event bus for container lifecycle events.

Handlers are registered per event type. ``publish`` awaits every handler
and retries failing handlers with a linear backoff, so a registered handler
sees each event at least once unless it keeps failing past the retry budget.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, DefaultDict, List, Optional, Type

import structlog

logger = structlog.get_logger(__name__)

Handler = Callable[[Any], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Event types ---


@dataclass
class ContainerStateChanged:
    """A container moved between states without the caller asking for it."""

    event_name = "state_changed"

    container_id: str
    owner_key: str
    previous_status: str
    new_status: str
    reason: Optional[str] = None
    message: Optional[str] = None
    occurred_at: datetime = field(default_factory=_utcnow)

    @property
    def requires_restart(self) -> bool:
        """Subscribers must drop cached references for these states."""
        return self.new_status in ("killed", "failed")

    def to_dict(self) -> dict:
        return {
            "containerId": self.container_id,
            "ownerKey": self.owner_key,
            "previousStatus": self.previous_status,
            "newStatus": self.new_status,
            "reason": self.reason,
            "message": self.message,
            "requiresRestart": self.requires_restart,
            "occurredAt": self.occurred_at.isoformat(),
        }


@dataclass
class ContainerProvisioned:
    """The runtime accepted a create request for a container."""

    event_name = "provisioned"

    container_id: str
    owner_key: str
    duration_ms: float

    def to_dict(self) -> dict:
        return {
            "containerId": self.container_id,
            "ownerKey": self.owner_key,
            "durationMs": round(self.duration_ms, 1),
        }


@dataclass
class ContainerReleased:
    """A container ID was returned to the allocator."""

    event_name = "released"

    container_id: str
    owner_key: str
    final_status: str

    def to_dict(self) -> dict:
        return {
            "containerId": self.container_id,
            "ownerKey": self.owner_key,
            "finalStatus": self.final_status,
        }


class EventBus:
    """Async publish/subscribe dispatcher keyed by event type."""

    def __init__(self, max_attempts: int = 3, retry_backoff: float = 0.5):
        self._handlers: DefaultDict[Type, List[Handler]] = defaultdict(list)
        self._max_attempts = max_attempts
        self._retry_backoff = retry_backoff

    def register_handler(self, event_type: Type, handler: Handler) -> None:
        """Register an async handler for an event type."""
        self._handlers[event_type].append(handler)

    def unregister_handler(self, event_type: Type, handler: Handler) -> None:
        try:
            self._handlers[event_type].remove(handler)
        except ValueError:
            pass

    def handler_count(self, event_type: Type) -> int:
        return len(self._handlers[event_type])

    async def publish(self, event: Any) -> None:
        """Deliver an event to every handler registered for its type.

        Handlers run concurrently; each is retried independently.
        """
        handlers = list(self._handlers[type(event)])
        if not handlers:
            return
        await asyncio.gather(
            *(self.deliver(handler, event) for handler in handlers)
        )

    async def deliver(self, handler: Handler, event: Any) -> bool:
        """Call one handler, retrying with linear backoff. Returns success."""
        for attempt in range(1, self._max_attempts + 1):
            try:
                await handler(event)
                return True
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Event handler failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    error=str(e),
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._retry_backoff * attempt)

        logger.error(
            "Event dropped after exhausting retries",
            event_type=type(event).__name__,
            handler=getattr(handler, "__qualname__", repr(handler)),
        )
        return False
