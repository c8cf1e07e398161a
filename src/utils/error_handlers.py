"""Exception handlers that render every failure as an ``ErrorResponse``.

Container errors carry ``containerId`` and ``requiresRestart`` so the IDE
client can tell a transient conflict from a container it has to replace.
Capacity and rate-limit errors also set ``Retry-After``.
"""

# Standard library imports
import traceback
from typing import Dict, Optional, Union

# Third-party imports
import structlog
from fastapi import Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

# Local application imports
from ..models.errors import (
    OrchestratorException,
    ErrorResponse,
    ErrorType,
    ErrorDetail,
)
from .id_generator import generate_request_id
from .request_helpers import get_client_ip

logger = structlog.get_logger(__name__)

HTTP_STATUS_ERROR_TYPES: Dict[int, ErrorType] = {
    400: ErrorType.VALIDATION,
    401: ErrorType.AUTHENTICATION,
    403: ErrorType.AUTHORIZATION,
    404: ErrorType.RESOURCE_NOT_FOUND,
    409: ErrorType.RESOURCE_CONFLICT,
    413: ErrorType.RESOURCE_EXHAUSTED,
    415: ErrorType.VALIDATION,
    422: ErrorType.VALIDATION,
    429: ErrorType.RATE_LIMITED,
    500: ErrorType.INTERNAL_SERVER,
    502: ErrorType.EXTERNAL_SERVICE,
    503: ErrorType.SERVICE_UNAVAILABLE,
    504: ErrorType.TIMEOUT,
}


def render_error(
    response: ErrorResponse,
    status_code: int,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Serialize an error body with camelCase container fields and no nulls."""
    content = response.model_dump(by_alias=True, exclude_none=True)
    if response.retry_after is not None:
        headers = {**(headers or {}), "Retry-After": str(response.retry_after)}
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def orchestrator_error_response(
    exc: OrchestratorException, headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    """Build the HTTP response for a domain exception.

    Also used by the security middleware, which rejects requests before
    FastAPI's exception handlers are reached.
    """
    if not exc.request_id:
        exc.request_id = generate_request_id()
    return render_error(exc.to_response(), exc.status_code, headers)


def _path_container_id(request: Request) -> Optional[str]:
    return request.path_params.get("container_id")


async def orchestrator_exception_handler(
    request: Request, exc: OrchestratorException
) -> JSONResponse:
    """Handle OrchestratorException and its container-specific subclasses."""
    response = orchestrator_error_response(exc)

    log_data = {
        "error_type": exc.error_type.value,
        "status_code": exc.status_code,
        "message": exc.message,
        "request_id": exc.request_id,
        "path": request.url.path,
        "method": request.method,
        "client_ip": get_client_ip(request),
    }
    if exc.container_id:
        log_data["container_id"] = exc.container_id
        log_data["requires_restart"] = exc.requires_restart
    if exc.details:
        log_data["details"] = [d.model_dump(exclude_none=True) for d in exc.details]

    if exc.status_code >= 500:
        logger.error("Request failed", **log_data)
    elif exc.error_type == ErrorType.RATE_LIMITED:
        logger.info("Request rate limited", **log_data)
    elif exc.error_type == ErrorType.RESOURCE_CONFLICT:
        # Lifecycle races the client is expected to resolve by refreshing
        logger.info("Container state conflict", **log_data)
    else:
        logger.warning("Request rejected", **log_data)

    return response


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPException instances."""
    request_id = generate_request_id()
    error_type = HTTP_STATUS_ERROR_TYPES.get(exc.status_code, ErrorType.INTERNAL_SERVER)

    logger.warning(
        "HTTP exception occurred",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        path=request.url.path,
        method=request.method,
        client_ip=get_client_ip(request),
    )

    return render_error(
        ErrorResponse(
            error=str(exc.detail),
            error_type=error_type,
            container_id=_path_container_id(request),
            request_id=request_id,
        ),
        exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: Union[RequestValidationError, PydanticValidationError]
) -> JSONResponse:
    """Handle request body and query validation errors."""
    request_id = generate_request_id()
    details = [
        ErrorDetail(
            field=" -> ".join(str(loc) for loc in error["loc"]),
            message=error["msg"],
            code=error["type"],
        )
        for error in exc.errors()
    ]

    logger.warning(
        "Validation error occurred",
        request_id=request_id,
        path=request.url.path,
        method=request.method,
        validation_errors=[d.model_dump(exclude_none=True) for d in details],
        client_ip=get_client_ip(request),
    )

    return render_error(
        ErrorResponse(
            error="Request validation failed",
            error_type=ErrorType.VALIDATION,
            details=details,
            container_id=_path_container_id(request),
            request_id=request_id,
        ),
        422,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without exposing internals."""
    request_id = generate_request_id()
    container_id = _path_container_id(request)

    logger.error(
        "Unexpected exception occurred",
        request_id=request_id,
        path=request.url.path,
        method=request.method,
        container_id=container_id,
        exception_type=type(exc).__name__,
        exception_message=str(exc),
        traceback=traceback.format_exc(),
        client_ip=get_client_ip(request),
    )

    return render_error(
        ErrorResponse(
            error="An unexpected error occurred",
            error_type=ErrorType.INTERNAL_SERVER,
            container_id=container_id,
            request_id=request_id,
        ),
        500,
    )
