"""Execution gateway.

Relays "run this file" requests to the web server inside an IDE container.
Files must already be in the container's workspace; the gateway only picks
the interpreter and forwards the request.
"""

from pathlib import PurePosixPath
from typing import Dict, Optional

import httpx
import structlog

from ...models.container import ContainerStatus, ExecutionRequest, ExecutionResult
from ...models.errors import (
    ContainerNotRunningError,
    ExecutionError,
    RuntimeTimeoutError,
    ValidationError,
)
from .lifecycle import ContainerLifecycleManager

logger = structlog.get_logger(__name__)

DEFAULT_LANGUAGE = "python"
SUPPORTED_LANGUAGES = frozenset({"python", "node", "java", "bash"})
EXTENSION_LANGUAGES: Dict[str, str] = {
    "py": "python",
    "js": "node",
    "ts": "node",
    "java": "java",
    "sh": "bash",
}
RUNNABLE_STATUSES = frozenset({ContainerStatus.STARTING, ContainerStatus.RUNNING})


def resolve_language(filename: str, language: Optional[str] = None) -> str:
    """Pick the interpreter for a file.

    An explicit language wins if it is supported; otherwise the file
    extension decides, defaulting to python.

    Raises:
        ValidationError: If an explicit language is not supported.
    """
    if language:
        normalized = language.strip().lower()
        if normalized not in SUPPORTED_LANGUAGES:
            raise ValidationError(
                f"Unsupported language '{language}'. "
                f"Supported: {', '.join(sorted(SUPPORTED_LANGUAGES))}"
            )
        return normalized

    suffix = PurePosixPath(filename).suffix.lower().lstrip(".")
    return EXTENSION_LANGUAGES.get(suffix, DEFAULT_LANGUAGE)


class ExecutionGateway:
    """Forwards run requests to a container's web server."""

    def __init__(
        self,
        lifecycle: ContainerLifecycleManager,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.lifecycle = lifecycle
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=float(timeout)),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        )

    async def run(
        self, container_id: str, filename: str, language: Optional[str] = None
    ) -> ExecutionResult:
        """Run ``filename`` inside the container.

        Raises:
            InvalidContainerIdError: Malformed ID.
            ContainerNotFoundError: Unknown container.
            ContainerNotRunningError: Container is stopped, stopping or dead.
            ValidationError: Bad filename or unsupported language.
            ExecutionError: The container reported a failure.
            RuntimeTimeoutError: The container did not answer in time.
        """
        container = await self.lifecycle.get_container(container_id)
        if container.status not in RUNNABLE_STATUSES:
            raise ContainerNotRunningError(container_id, container.status.value)

        filename = filename.strip()
        if not filename:
            raise ValidationError("filename must not be empty")
        request = ExecutionRequest(
            container_id=container_id,
            filename=filename,
            language=resolve_language(filename, language),
        )

        url = f"{container.urls.web_server.rstrip('/')}/run"
        payload = request.model_dump(include={"filename", "language"})
        logger.info(
            "Running file in container",
            container_id=container_id,
            filename=filename,
            language=request.language,
        )

        try:
            response = await self.client.post(url, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            logger.warning(
                "Container run request timed out",
                container_id=container_id,
                timeout=self.timeout,
            )
            raise RuntimeTimeoutError("execute", self.timeout) from e
        except httpx.RequestError as e:
            logger.warning(
                "Container run request failed", container_id=container_id, error=str(e)
            )
            raise ExecutionError(f"Failed to reach container {container_id}: {e}") from e

        body = self._parse_body(response)
        message = body.get("message") or body.get("error")

        if response.is_error or body.get("status") != "success":
            logger.warning(
                "Container reported run failure",
                container_id=container_id,
                status_code=response.status_code,
                message=message,
            )
            raise ExecutionError(
                message or f"Container run failed with HTTP {response.status_code}"
            )

        return ExecutionResult(
            container_id=container_id,
            filename=filename,
            language=request.language,
            status="success",
            message=message,
            command=body.get("command"),
        )

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            text = response.text.strip()
            return {"message": text} if text else {}
        return body if isinstance(body, dict) else {}

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
