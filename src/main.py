"""Main FastAPI application for the IDE orchestration API."""

# Standard library imports
from contextlib import asynccontextmanager

# Third-party imports
import structlog
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

# Local application imports
from .api import health, ide
from .config import settings
from .core.pool import redis_pool
from .dependencies import (
    get_execution_gateway,
    get_lifecycle_manager,
    get_reconciler,
    get_runtime_backend,
    get_status_notifier,
    set_reconciler,
)
from .middleware.security import SecurityMiddleware, RequestLoggingMiddleware
from .models.errors import OrchestratorException
from .services.ide import ContainerReconciler
from .utils.error_handlers import (
    orchestrator_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    general_exception_handler,
)
from .utils.logging import setup_logging

# Setup logging
setup_logging()
logger = structlog.get_logger()


async def _startup_lifecycle() -> None:
    """Reserve IDs of containers that survived a restart."""
    try:
        reserved = await get_lifecycle_manager().initialize()
        logger.info("Existing container IDs loaded", reserved=reserved)
    except Exception as e:
        logger.error("Failed to load existing container IDs", error=str(e))


async def _startup_reconciler(app: FastAPI) -> None:
    """Start the background status reconciler if enabled."""
    if not settings.reconciler_enabled:
        logger.info("Container reconciler disabled")
        return

    reconciler = ContainerReconciler(
        get_lifecycle_manager(),
        interval_seconds=settings.status_poll_interval_seconds,
        retention_minutes=settings.terminal_retention_minutes,
    )
    await reconciler.start()
    set_reconciler(reconciler)
    app.state.reconciler = reconciler


async def _shutdown_services(app: FastAPI) -> None:
    """Stop background tasks and close client connections."""
    reconciler = get_reconciler()
    if reconciler is not None:
        try:
            await reconciler.stop()
        except Exception as e:
            logger.error("Error stopping reconciler", error=str(e))
        set_reconciler(None)

    try:
        await get_lifecycle_manager().shutdown()
    except Exception as e:
        logger.error("Error stopping lifecycle manager", error=str(e))

    try:
        await get_status_notifier().close()
        await get_execution_gateway().close()
        await get_runtime_backend().close()
    except Exception as e:
        logger.error("Error closing service clients", error=str(e))

    if settings.state_backend == "redis":
        try:
            await redis_pool.close()
        except Exception as e:
            logger.error("Error closing Redis pool", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(
        "Starting IDE orchestration API",
        version="1.0.0",
        state_backend=settings.state_backend,
        runtime_backend=settings.runtime_backend,
    )

    if not settings.api_key:
        logger.warning("API_KEY not set - service endpoints are unauthenticated")
    if settings.api_debug:
        logger.warning("Debug mode is enabled - disable in production")
    logger.debug(
        "Rate limiting",
        enabled=settings.rate_limit_enabled,
        requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    logger.debug(
        "Capacity limits",
        max_containers=settings.max_containers or None,
        memory_threshold_percent=settings.capacity_memory_threshold_percent,
    )

    await _startup_lifecycle()
    await _startup_reconciler(app)

    logger.info("IDE orchestration API startup completed")

    yield

    logger.info("Shutting down IDE orchestration API")
    await _shutdown_services(app)
    logger.info("IDE orchestration API shutdown completed")


# Create FastAPI app with enhanced configuration
api_config = settings.api
app = FastAPI(
    title="IDE Orchestration API",
    description="Provisions and tracks per-user IDE containers",
    version="1.0.0",
    docs_url="/docs" if api_config.enable_docs else None,
    redoc_url="/redoc" if api_config.enable_docs else None,
    debug=api_config.api_debug,
    lifespan=lifespan,
)

# Add middleware (order matters - most specific first)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityMiddleware)

# Add CORS middleware (conditionally)
if api_config.enable_cors:
    origins = api_config.cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    logger.info("CORS enabled", origins=origins)

# Register global error handlers
app.add_exception_handler(OrchestratorException, orchestrator_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(ValidationError, validation_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

# Include routers (authentication handled by middleware)
app.include_router(ide.router)
app.include_router(health.router, tags=["health", "monitoring"])


def run_server():
    api_config = settings.api
    logger.info(f"Starting HTTP server on {api_config.api_host}:{api_config.api_port}")
    uvicorn.run(
        "src.main:app",
        host=api_config.api_host,
        port=api_config.api_port,
        reload=api_config.api_reload,
        log_level=settings.log_level.lower(),
        access_log=settings.enable_access_logs,
        timeout_keep_alive=120,
    )


if __name__ == "__main__":
    run_server()
