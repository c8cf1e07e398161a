"""Status/event notifier.

The lifecycle manager reports transitions it observed but nobody requested
(a crash, an idle reap, a failed provision). Subscribers such as UI sessions
each get a private FIFO queue drained by their own worker, so one slow or
failing subscriber never reorders or blocks events for another. Queues are
bounded; a subscriber that falls that far behind loses the overflow.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type

import structlog

from ...core.events import ContainerStateChanged, EventBus

logger = structlog.get_logger(__name__)

Handler = Callable[[Any], Awaitable[None]]


DEFAULT_QUEUE_SIZE = 1000


class _Subscription:
    def __init__(self, handler: Handler, event_types: Iterable[Type], max_size: int):
        self.handler = handler
        self.event_types = tuple(event_types)
        self.queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=max_size)
        self.worker: Optional[asyncio.Task] = None
        self.dropped = 0

    async def enqueue(self, event: Any) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Subscriber queue full, dropping event",
                event_type=type(event).__name__,
                container_id=getattr(event, "container_id", None),
                queue_size=self.queue.maxsize,
                dropped=self.dropped,
            )


class StatusNotifier:
    """Fans lifecycle events out to subscribers with at-least-once delivery.

    Delivery to a subscriber is retried on the event bus's retry budget; an
    event that still fails, or that arrives while the subscriber's queue is
    full, is logged and dropped for that subscriber only.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._bus = event_bus or EventBus()
        self._max_queue_size = max_queue_size
        self._subscriptions: Dict[int, _Subscription] = {}
        self._next_id = 0

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def on_state_change(
        self,
        container_id: str,
        previous_status: str,
        new_status: str,
        reason: Optional[str] = None,
        owner_key: str = "",
        message: Optional[str] = None,
    ) -> ContainerStateChanged:
        """Publish an unrequested state transition."""
        event = ContainerStateChanged(
            container_id=container_id,
            owner_key=owner_key,
            previous_status=previous_status,
            new_status=new_status,
            reason=reason,
            message=message,
        )
        logger.info(
            "Container state changed",
            container_id=container_id,
            owner_key=owner_key,
            previous_status=previous_status,
            new_status=new_status,
            reason=reason,
            requires_restart=event.requires_restart,
        )
        await self._bus.publish(event)
        return event

    async def publish(self, event: Any) -> None:
        await self._bus.publish(event)

    def subscribe(
        self,
        handler: Handler,
        event_types: Iterable[Type] = (ContainerStateChanged,),
    ) -> Callable[[], None]:
        """Register an async handler. Returns a function that unsubscribes it.

        Must be called from a running event loop.
        """
        subscription = _Subscription(handler, event_types, self._max_queue_size)
        subscription_id = self._next_id
        self._next_id += 1

        for event_type in subscription.event_types:
            self._bus.register_handler(event_type, subscription.enqueue)
        subscription.worker = asyncio.create_task(self._drain(subscription))
        self._subscriptions[subscription_id] = subscription

        def unsubscribe() -> None:
            sub = self._subscriptions.pop(subscription_id, None)
            if sub is None:
                return
            for event_type in sub.event_types:
                self._bus.unregister_handler(event_type, sub.enqueue)
            if sub.worker is not None:
                sub.worker.cancel()

        return unsubscribe

    async def _drain(self, subscription: _Subscription) -> None:
        while True:
            event = await subscription.queue.get()
            try:
                await self._bus.deliver(subscription.handler, event)
            finally:
                subscription.queue.task_done()

    async def wait_idle(self) -> None:
        """Wait until every subscriber queue has been drained."""
        await asyncio.gather(
            *(sub.queue.join() for sub in list(self._subscriptions.values()))
        )

    async def close(self) -> None:
        workers: List[asyncio.Task] = []
        for subscription in self._subscriptions.values():
            for event_type in subscription.event_types:
                self._bus.unregister_handler(event_type, subscription.enqueue)
            if subscription.worker is not None:
                subscription.worker.cancel()
                workers.append(subscription.worker)
        self._subscriptions.clear()
        await asyncio.gather(*workers, return_exceptions=True)
