"""IDE container endpoints."""

import asyncio
import json
from typing import Any, Optional

from fastapi import APIRouter, Query, Request, Response, status
from fastapi.responses import StreamingResponse
import structlog

from ..core.events import (
    ContainerProvisioned,
    ContainerReleased,
    ContainerStateChanged,
)
from ..dependencies import ExecutionGatewayDep, LifecycleManagerDep, StatusNotifierDep
from ..models.container import ContainerStatus, ShutdownReason
from ..models.ide import (
    ContainerListResponse,
    ContainerResponse,
    InactivityShutdownRequest,
    RunRequest,
    RunResponse,
    StartContainerRequest,
)
from ..utils.request_helpers import get_environment_mode

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/ide", tags=["ide"])

SSE_KEEPALIVE_SECONDS = 15.0
# Events buffered per stream before a stalled client is disconnected
SSE_QUEUE_SIZE = 256
STREAMED_EVENTS = (ContainerStateChanged, ContainerProvisioned, ContainerReleased)


def format_sse(event: Any) -> str:
    """Render a lifecycle event as a server-sent event frame."""
    return f"event: {event.event_name}\ndata: {json.dumps(event.to_dict())}\n\n"


@router.post(
    "/start-container",
    response_model=ContainerResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_container(
    body: StartContainerRequest,
    request: Request,
    response: Response,
    lifecycle: LifecycleManagerDep,
):
    """Start an IDE container, or return the owner's active one."""
    environment_mode = get_environment_mode(request, body.environment_mode)
    container, is_reused = await lifecycle.ensure_container(
        body.resolve_owner_key(),
        body.bucket_ref,
        environment_mode,
        region=body.region,
        user_id=body.user_id,
    )
    if is_reused:
        response.status_code = status.HTTP_200_OK
    return ContainerResponse.from_container(container, is_reused=is_reused)


@router.get("/container/{container_id}", response_model=ContainerResponse)
async def get_container_status(container_id: str, lifecycle: LifecycleManagerDep):
    """Current status of a container, refreshed from the runtime."""
    container = await lifecycle.check_status(container_id)
    return ContainerResponse.from_container(container)


@router.delete("/container/{container_id}", response_model=ContainerResponse)
async def stop_container(container_id: str, lifecycle: LifecycleManagerDep):
    container = await lifecycle.stop_container(container_id)
    return ContainerResponse.from_container(container)


@router.post(
    "/container/{container_id}/acknowledge",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def acknowledge_container(container_id: str, lifecycle: LifecycleManagerDep):
    """Release a failed or killed container after the client has seen it."""
    await lifecycle.acknowledge(container_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{container_id}/run", response_model=RunResponse)
async def run_file(
    container_id: str, body: RunRequest, gateway: ExecutionGatewayDep
):
    """Run a file that already exists in the container's workspace."""
    result = await gateway.run(container_id, body.filename, body.language)
    return RunResponse(
        container_id=result.container_id,
        filename=result.filename,
        language=result.language,
        status=result.status,
        message=result.message,
        command=result.command,
    )


@router.post("/{container_id}/inactivity-shutdown", response_model=ContainerResponse)
async def inactivity_shutdown(
    container_id: str,
    lifecycle: LifecycleManagerDep,
    body: Optional[InactivityShutdownRequest] = None,
):
    """Webhook called by a container that is shutting itself down when idle."""
    message = body.reason if body and body.reason else None
    logger.info(
        "Inactivity shutdown reported", container_id=container_id, reason=message
    )
    container = await lifecycle.report_shutdown(
        container_id, ShutdownReason.INACTIVITY, message=message
    )
    return ContainerResponse.from_container(container)


@router.get("/containers", response_model=ContainerListResponse)
async def list_containers(
    lifecycle: LifecycleManagerDep,
    status_filter: Optional[ContainerStatus] = Query(None, alias="status"),
):
    containers = await lifecycle.list_containers(status_filter)
    return ContainerListResponse(
        containers=[ContainerResponse.from_container(c) for c in containers],
        total=len(containers),
    )


@router.get("/events")
async def stream_events(
    request: Request,
    notifier: StatusNotifierDep,
    container_id: Optional[str] = Query(None, alias="containerId"),
):
    """Stream lifecycle events as server-sent events.

    A client that stops reading is disconnected once its buffer fills; it
    should reconnect and refresh container status.
    """
    queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=SSE_QUEUE_SIZE)
    overflowed = asyncio.Event()

    async def forward(event: Any) -> None:
        if container_id and event.container_id != container_id:
            return
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            overflowed.set()

    unsubscribe = notifier.subscribe(forward, event_types=STREAMED_EVENTS)

    async def event_stream():
        try:
            yield ": connected\n\n"
            while not await request.is_disconnected():
                if overflowed.is_set():
                    logger.warning(
                        "Event stream fell behind, disconnecting",
                        container_id=container_id,
                        buffered=queue.qsize(),
                    )
                    break
                try:
                    event = await asyncio.wait_for(
                        queue.get(), timeout=SSE_KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(event)
        finally:
            unsubscribe()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
