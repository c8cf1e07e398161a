"""Health check and monitoring endpoints."""

import asyncio
import time
from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import structlog

from ..config import settings
from ..core.pool import redis_pool
from ..dependencies import (
    CapacityGuardDep,
    LifecycleManagerDep,
    RuntimeBackendDep,
    StateStoreDep,
    StatusNotifierDep,
    get_reconciler,
)

logger = structlog.get_logger(__name__)
router = APIRouter()

SERVICE_NAME = "ide-orchestrator"
SERVICE_VERSION = "1.0.0"
CHECK_TIMEOUT_SECONDS = 5.0


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


async def _check(name: str, ping: Awaitable[bool]) -> Dict:
    started = time.perf_counter()
    try:
        ok = await asyncio.wait_for(ping, timeout=CHECK_TIMEOUT_SECONDS)
        status = HealthStatus.HEALTHY if ok else HealthStatus.UNHEALTHY
        error = None if ok else f"{name} did not respond"
    except Exception as e:
        logger.warning("Health check failed", service=name, error=str(e))
        status = HealthStatus.UNHEALTHY
        error = str(e) if settings.api_debug else f"{name} check failed"
    result = {
        "status": status.value,
        "response_time_ms": round((time.perf_counter() - started) * 1000, 2),
    }
    if error:
        result["error"] = error
    return result


@router.get("/health", summary="Basic health check")
async def basic_health_check():
    """Basic health check endpoint that doesn't require authentication."""
    return {
        "status": HealthStatus.HEALTHY.value,
        "version": SERVICE_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
    }


@router.get("/health/detailed", summary="Detailed health check")
async def detailed_health_check(
    lifecycle: LifecycleManagerDep,
    runtime: RuntimeBackendDep,
    state_store: StateStoreDep,
    notifier: StatusNotifierDep,
    capacity: CapacityGuardDep,
):
    """Detailed health check of the state store, runtime and background tasks."""
    state_result, runtime_result = await asyncio.gather(
        _check(f"state_store:{settings.state_backend}", state_store.ping()),
        _check(f"runtime:{runtime.name}", runtime.ping()),
    )
    services = {"state_store": state_result, "runtime": runtime_result}

    reconciler = get_reconciler()
    reconciler_info = {"enabled": reconciler is not None}
    if reconciler is not None:
        reconciler_info["running"] = reconciler.is_running
        reconciler_info["last_sweep_at"] = (
            reconciler.last_sweep_at.isoformat() if reconciler.last_sweep_at else None
        )

    containers_by_status: Dict[str, int] = {}
    capacity_info: Dict = {
        "max_containers": capacity.max_containers or None,
        "memory_threshold_percent": capacity.memory_threshold_percent or None,
    }
    if state_result["status"] == HealthStatus.HEALTHY.value:
        containers = await lifecycle.list_containers()
        containers_by_status = dict(Counter(c.status.value for c in containers))
        capacity_info.update((await capacity.usage()).to_dict())

    if state_result["status"] != HealthStatus.HEALTHY.value:
        overall = HealthStatus.UNHEALTHY
    elif runtime_result["status"] != HealthStatus.HEALTHY.value:
        overall = HealthStatus.DEGRADED
    elif reconciler is not None and not reconciler.is_running:
        overall = HealthStatus.DEGRADED
    else:
        overall = HealthStatus.HEALTHY

    response_data = {
        "status": overall.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": services,
        "reconciler": reconciler_info,
        "containers": {
            "by_status": containers_by_status,
            "provisioning": lifecycle.provisioning_count,
        },
        "capacity": capacity_info,
        "subscribers": notifier.subscriber_count,
    }
    if settings.state_backend == "redis":
        response_data["redis_pool"] = redis_pool.pool_stats

    if overall == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=response_data)
    if overall == HealthStatus.DEGRADED:
        return JSONResponse(
            status_code=200,
            content=response_data,
            headers={"X-Health-Status": "degraded"},
        )
    return JSONResponse(status_code=200, content=response_data)
