"""Consolidated security middleware for the IDE orchestration API."""

# Standard library imports
import hmac
import re
import time
from typing import Callable, Optional

# Third-party imports
import structlog
from fastapi import Request, HTTPException

# Local application imports
from ..config import settings
from ..dependencies.services import get_rate_limiter
from ..models.errors import ErrorResponse, ErrorType, RateLimitExceededError
from ..services.rate_limit import RateLimiter, RateLimitResult
from ..utils.error_handlers import (
    HTTP_STATUS_ERROR_TYPES,
    orchestrator_error_response,
    render_error,
)
from ..utils.id_generator import generate_request_id
from ..utils.request_helpers import extract_api_key, get_client_ip

logger = structlog.get_logger(__name__)

DOCS_PATHS = {"/docs", "/redoc", "/openapi.json"}

# IDE containers call this webhook themselves and carry no service token
CONTAINER_WEBHOOK_PATTERN = re.compile(r"^/ide/[a-z0-9-]+/inactivity-shutdown$")


class SecurityMiddleware:
    """Adds security headers, enforces the optional service API key and
    applies the per-caller request rate limit."""

    def __init__(
        self,
        app: Callable,
        api_key: Optional[str] = None,
        rate_limiter_factory: Optional[Callable[[], Optional[RateLimiter]]] = None,
    ):
        self.app = app
        self.api_key = api_key if api_key is not None else settings.api_key
        self.excluded_paths = {"/health", "/health/detailed"} | DOCS_PATHS
        self._rate_limiter_factory = rate_limiter_factory or get_rate_limiter

    async def __call__(self, scope: dict, receive: Callable, send: Callable):
        """Process request through consolidated security middleware."""
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        rate_limit: Optional[RateLimitResult] = None

        # Helper to add security headers to a response message
        def add_security_headers(message):
            if message["type"] == "http.response.start":
                headers = dict(message.get("headers", []))
                path = scope.get("path", "")

                security_headers = {
                    b"x-content-type-options": b"nosniff",
                    b"x-frame-options": b"DENY",
                    b"strict-transport-security": b"max-age=31536000; includeSubDomains",
                    b"referrer-policy": b"strict-origin-when-cross-origin",
                    b"permissions-policy": b"geolocation=(), microphone=(), camera=()",
                }

                if path in DOCS_PATHS:
                    security_headers[b"content-security-policy"] = (
                        b"default-src 'self'; "
                        b"script-src 'self' 'unsafe-inline' cdn.jsdelivr.net; "
                        b"style-src 'self' 'unsafe-inline' cdn.jsdelivr.net; "
                        b"img-src 'self' data: fastapi.tiangolo.com; "
                        b"frame-src 'self';"
                    )
                else:
                    security_headers[b"content-security-policy"] = b"default-src 'self'"

                for key, value in security_headers.items():
                    headers[key] = value
                if rate_limit is not None:
                    for key, value in rate_limit.headers().items():
                        headers[key.lower().encode()] = value.encode()

                message["headers"] = list(headers.items())

        # Wrapper to intercept and add headers to any response
        async def send_wrapper(message):
            add_security_headers(message)
            await send(message)

        try:
            self._validate_request(request)

            if not self._is_exempt(request):
                if self.api_key:
                    self._authenticate_request(request, scope)
                rate_limit = await self._check_rate_limit(request)

        except HTTPException as e:
            response = render_error(
                ErrorResponse(
                    error=str(e.detail),
                    error_type=HTTP_STATUS_ERROR_TYPES.get(
                        e.status_code, ErrorType.INTERNAL_SERVER
                    ),
                    request_id=generate_request_id(),
                ),
                e.status_code,
                headers=e.headers,
            )
            await response(scope, receive, send_wrapper)
            return
        except RateLimitExceededError as e:
            response = orchestrator_error_response(e, headers=e.headers)
            await response(scope, receive, send_wrapper)
            return

        await self.app(scope, receive, send_wrapper)

    def _validate_request(self, request: Request):
        """Reject request bodies that are not JSON."""
        if request.method not in ("POST", "PUT", "PATCH"):
            return
        content_length = request.headers.get("content-length")
        if not content_length or content_length == "0":
            return
        content_type = request.headers.get("content-type", "")
        if "application/json" not in content_type:
            raise HTTPException(
                status_code=415, detail=f"Unsupported content type: {content_type}"
            )

    def _is_exempt(self, request: Request) -> bool:
        """Health, docs, preflight and container webhooks skip auth and limits."""
        path = request.url.path
        if path in self.excluded_paths or request.method == "OPTIONS":
            return True
        return CONTAINER_WEBHOOK_PATTERN.match(path) is not None

    def _authenticate_request(self, request: Request, scope: dict):
        """Check the shared service API key."""
        api_key = extract_api_key(request)
        if not api_key or not hmac.compare_digest(api_key, self.api_key):
            logger.warning(
                "Rejected request with invalid API key",
                path=request.url.path,
                client_ip=get_client_ip(request),
                key_present=bool(api_key),
            )
            raise HTTPException(status_code=401, detail="Invalid or missing API key")

        scope["state"] = scope.get("state", {})
        scope["state"]["authenticated"] = True

    async def _check_rate_limit(self, request: Request) -> Optional[RateLimitResult]:
        """Count the request against its caller's window.

        Raises:
            RateLimitExceededError: If the caller is over the limit.
        """
        limiter = self._rate_limiter_factory()
        if limiter is None:
            return None

        identity = (extract_api_key(request) if self.api_key else None) or (
            f"ip:{get_client_ip(request)}"
        )
        try:
            result = await limiter.hit(identity)
        except Exception as e:
            # A limiter outage must not take the API down with it
            logger.warning("Rate limiter unavailable", error=str(e))
            return None

        if not result.allowed:
            logger.info(
                "Rate limit exceeded",
                path=request.url.path,
                client_ip=get_client_ip(request),
                limit=result.limit,
                retry_after=result.retry_after,
            )
            raise RateLimitExceededError(
                headers=result.headers(),
                limit=result.limit,
                window_seconds=result.window_seconds,
                retry_after=result.retry_after,
            )
        return result


class RequestLoggingMiddleware:
    """Simplified request logging middleware."""

    def __init__(self, app: Callable):
        self.app = app
        self.health_logged = False

    async def __call__(self, scope: dict, receive: Callable, send: Callable):
        """Log request information."""
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        start_time = time.time()

        # Skip repeated health check logging
        skip_logging = request.url.path == "/health" and self.health_logged
        if request.url.path == "/health" and not self.health_logged:
            self.health_logged = True

        response_status = None

        async def send_wrapper(message):
            nonlocal response_status
            if message["type"] == "http.response.start":
                response_status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            if not skip_logging:
                logger.error(
                    "Request failed",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                )
            raise
        finally:
            if not skip_logging:
                duration = time.time() - start_time
                log_kwargs = dict(
                    method=request.method,
                    path=request.url.path,
                    status=response_status,
                    duration_ms=round(duration * 1000, 2),
                    environment=request.headers.get("x-ide-environment", "remote"),
                )
                if response_status and response_status >= 500:
                    logger.error("Request failed", **log_kwargs)
                elif response_status and response_status >= 400:
                    logger.warning("Request error", **log_kwargs)
                else:
                    logger.debug("Request processed", **log_kwargs)
