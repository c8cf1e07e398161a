"""Docker runtime backend.

Each IDE container is one labelled Docker container named ``ide-{id}``,
attached to the ingress network so the reverse proxy can route to it. The
Docker SDK is blocking, so every call runs in the default thread pool.
"""

import asyncio
from typing import Dict, List, Optional

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container as DockerContainer

from ....models.errors import ProvisioningError, ServiceUnavailableError
from .base import ProvisionSpec, RuntimeBackend, RuntimeInspection, RuntimeState

logger = structlog.get_logger(__name__)

NAME_PREFIX = "ide-"
MANAGED_LABEL = "ide.managed"
CONTAINER_ID_LABEL = "ide.container.id"

DOCKER_STATE_MAP: Dict[str, RuntimeState] = {
    "created": RuntimeState.PROVISIONING,
    "restarting": RuntimeState.PROVISIONING,
    "running": RuntimeState.RUNNING,
    "paused": RuntimeState.RUNNING,
    "removing": RuntimeState.EXITED,
    "exited": RuntimeState.EXITED,
    "dead": RuntimeState.ERROR,
}


async def run_in_executor(func, *args, **kwargs):
    """Run a blocking Docker SDK call in the default thread pool executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


def map_docker_status(status: Optional[str]) -> RuntimeState:
    if not status:
        return RuntimeState.ERROR
    return DOCKER_STATE_MAP.get(status.lower(), RuntimeState.ERROR)


class DockerRuntime(RuntimeBackend):
    """Runs IDE containers on a Docker daemon."""

    name = "docker"

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        base_url: Optional[str] = None,
    ):
        self._client = client
        self._base_url = base_url

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                if self._base_url:
                    self._client = docker.DockerClient(base_url=self._base_url)
                else:
                    self._client = docker.from_env()
            except DockerException as e:
                logger.error("Failed to connect to Docker daemon", error=str(e))
                raise ServiceUnavailableError("docker", str(e))
        return self._client

    @staticmethod
    def container_name(container_id: str) -> str:
        return f"{NAME_PREFIX}{container_id}"

    async def create(self, spec: ProvisionSpec) -> str:
        try:
            container = await run_in_executor(self._run_container, spec)
        except ImageNotFound as e:
            raise ProvisioningError(f"IDE image not found: {spec.image}") from e
        except APIError as e:
            raise ProvisioningError(
                f"Docker refused to create container: {e.explanation or e}"
            ) from e

        logger.info(
            "Docker container created",
            container_id=spec.container_id,
            docker_id=container.short_id,
            image=spec.image,
        )
        return container.id

    def _run_container(self, spec: ProvisionSpec) -> DockerContainer:
        labels = dict(spec.labels)
        labels[MANAGED_LABEL] = "true"
        labels[CONTAINER_ID_LABEL] = spec.container_id

        kwargs = {
            "image": spec.image,
            "name": self.container_name(spec.container_id),
            "hostname": self.container_name(spec.container_id),
            "detach": True,
            "environment": spec.environment,
            "labels": labels,
        }
        if spec.network:
            kwargs["network"] = spec.network
        if spec.cpu_limit:
            kwargs["nano_cpus"] = int(spec.cpu_limit * 1_000_000_000)
        if spec.memory_limit:
            kwargs["mem_limit"] = spec.memory_limit

        return self.client.containers.run(**kwargs)

    async def inspect(self, container_id: str) -> RuntimeInspection:
        try:
            container = await run_in_executor(
                self.client.containers.get, self.container_name(container_id)
            )
        except NotFound:
            return RuntimeInspection(
                container_id=container_id, state=RuntimeState.MISSING
            )
        except APIError as e:
            # The daemon could not answer; that says nothing about the container
            logger.warning(
                "Docker inspect failed", container_id=container_id, error=str(e)
            )
            raise ServiceUnavailableError(
                "docker", f"Docker inspect failed: {e.explanation or e}"
            ) from e

        state_info = container.attrs.get("State", {}) or {}
        return RuntimeInspection(
            container_id=container_id,
            state=map_docker_status(container.status),
            native_status=container.status,
            exit_code=state_info.get("ExitCode"),
            error=state_info.get("Error") or None,
        )

    async def destroy(self, container_id: str) -> None:
        try:
            container = await run_in_executor(
                self.client.containers.get, self.container_name(container_id)
            )
        except NotFound:
            logger.debug("Docker container already gone", container_id=container_id)
            return

        try:
            await run_in_executor(container.remove, force=True)
        except NotFound:
            return
        logger.info("Docker container removed", container_id=container_id)

    async def list_ids(self) -> List[str]:
        containers = await run_in_executor(
            self.client.containers.list,
            all=True,
            filters={"label": f"{MANAGED_LABEL}=true"},
        )
        ids = []
        for container in containers:
            labels = container.labels or {}
            container_id = labels.get(CONTAINER_ID_LABEL)
            if not container_id and container.name.startswith(NAME_PREFIX):
                container_id = container.name[len(NAME_PREFIX):]
            if container_id:
                ids.append(container_id)
        return ids

    async def ping(self) -> bool:
        try:
            return bool(await run_in_executor(self.client.ping))
        except (DockerException, ServiceUnavailableError) as e:
            logger.warning("Docker ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._client is not None:
            await run_in_executor(self._client.close)
            self._client = None
