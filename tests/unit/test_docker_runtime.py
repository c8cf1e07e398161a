"""Unit tests for the Docker runtime backend."""

from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from src.models.errors import ProvisioningError, ServiceUnavailableError
from src.services.ide.runtime import ProvisionSpec, RuntimeState
from src.services.ide.runtime.docker import (
    CONTAINER_ID_LABEL,
    MANAGED_LABEL,
    DockerRuntime,
    map_docker_status,
)


@pytest.fixture
def docker_client():
    """Mock Docker client."""
    client = MagicMock()
    client.containers = MagicMock()
    return client


@pytest.fixture
def docker_runtime(docker_client):
    return DockerRuntime(client=docker_client)


def make_spec(**overrides) -> ProvisionSpec:
    values = {
        "container_id": "abcd1234",
        "image": "ide-container:latest",
        "environment": {"CONTAINER_ID": "abcd1234"},
        "labels": {"traefik.enable": "true"},
        "network": "ide-network",
        "cpu_limit": 1.5,
        "memory_limit": 2147483648,
    }
    values.update(overrides)
    return ProvisionSpec(**values)


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,expected",
        [
            ("created", RuntimeState.PROVISIONING),
            ("restarting", RuntimeState.PROVISIONING),
            ("running", RuntimeState.RUNNING),
            ("paused", RuntimeState.RUNNING),
            ("exited", RuntimeState.EXITED),
            ("removing", RuntimeState.EXITED),
            ("dead", RuntimeState.ERROR),
            ("something-new", RuntimeState.ERROR),
            (None, RuntimeState.ERROR),
        ],
    )
    def test_map_docker_status(self, status, expected):
        assert map_docker_status(status) == expected


class TestCreate:
    """Tests for DockerRuntime.create."""

    @pytest.mark.asyncio
    async def test_runs_labelled_container(self, docker_runtime, docker_client):
        created = MagicMock(id="docker-full-id", short_id="docker-sho")
        docker_client.containers.run.return_value = created

        handle = await docker_runtime.create(make_spec())

        assert handle == "docker-full-id"
        kwargs = docker_client.containers.run.call_args.kwargs
        assert kwargs["image"] == "ide-container:latest"
        assert kwargs["name"] == "ide-abcd1234"
        assert kwargs["detach"] is True
        assert kwargs["network"] == "ide-network"
        assert kwargs["nano_cpus"] == 1_500_000_000
        assert kwargs["mem_limit"] == 2147483648
        assert kwargs["environment"] == {"CONTAINER_ID": "abcd1234"}
        assert kwargs["labels"]["traefik.enable"] == "true"
        assert kwargs["labels"][MANAGED_LABEL] == "true"
        assert kwargs["labels"][CONTAINER_ID_LABEL] == "abcd1234"

    @pytest.mark.asyncio
    async def test_optional_limits_omitted(self, docker_runtime, docker_client):
        docker_client.containers.run.return_value = MagicMock(id="x", short_id="x")

        await docker_runtime.create(
            make_spec(network=None, cpu_limit=None, memory_limit=None)
        )

        kwargs = docker_client.containers.run.call_args.kwargs
        assert "network" not in kwargs
        assert "nano_cpus" not in kwargs
        assert "mem_limit" not in kwargs

    @pytest.mark.asyncio
    async def test_missing_image(self, docker_runtime, docker_client):
        docker_client.containers.run.side_effect = ImageNotFound("no such image")

        with pytest.raises(ProvisioningError) as exc_info:
            await docker_runtime.create(make_spec())

        assert "ide-container:latest" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_api_error(self, docker_runtime, docker_client):
        docker_client.containers.run.side_effect = APIError(
            "conflict", explanation="name already in use"
        )

        with pytest.raises(ProvisioningError) as exc_info:
            await docker_runtime.create(make_spec())

        assert "name already in use" in exc_info.value.message


class TestInspect:
    """Tests for DockerRuntime.inspect."""

    @pytest.mark.asyncio
    async def test_running(self, docker_runtime, docker_client):
        container = MagicMock(status="running")
        container.attrs = {"State": {"ExitCode": 0, "Error": ""}}
        docker_client.containers.get.return_value = container

        inspection = await docker_runtime.inspect("abcd1234")

        docker_client.containers.get.assert_called_with("ide-abcd1234")
        assert inspection.state == RuntimeState.RUNNING
        assert inspection.native_status == "running"
        assert inspection.error is None

    @pytest.mark.asyncio
    async def test_exited_with_error(self, docker_runtime, docker_client):
        container = MagicMock(status="exited")
        container.attrs = {"State": {"ExitCode": 137, "Error": "OOMKilled"}}
        docker_client.containers.get.return_value = container

        inspection = await docker_runtime.inspect("abcd1234")

        assert inspection.state == RuntimeState.EXITED
        assert inspection.exit_code == 137
        assert inspection.error == "OOMKilled"

    @pytest.mark.asyncio
    async def test_not_found_is_missing(self, docker_runtime, docker_client):
        docker_client.containers.get.side_effect = NotFound("gone")

        inspection = await docker_runtime.inspect("abcd1234")

        assert inspection.state == RuntimeState.MISSING

    @pytest.mark.asyncio
    async def test_api_error_raises_unavailable(self, docker_runtime, docker_client):
        docker_client.containers.get.side_effect = APIError("daemon busy")

        with pytest.raises(ServiceUnavailableError):
            await docker_runtime.inspect("abcd1234")

    @pytest.mark.asyncio
    async def test_dead_container_is_error_state(self, docker_runtime, docker_client):
        container = MagicMock(status="dead")
        container.attrs = {"State": {"ExitCode": 1, "Error": "driver failed"}}
        docker_client.containers.get.return_value = container

        inspection = await docker_runtime.inspect("abcd1234")

        assert inspection.state == RuntimeState.ERROR
        assert inspection.error == "driver failed"


class TestDestroy:
    """Tests for DockerRuntime.destroy."""

    @pytest.mark.asyncio
    async def test_force_removes(self, docker_runtime, docker_client):
        container = MagicMock()
        docker_client.containers.get.return_value = container

        await docker_runtime.destroy("abcd1234")

        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_already_gone(self, docker_runtime, docker_client):
        """Destroying a missing container is a no-op."""
        docker_client.containers.get.side_effect = NotFound("gone")

        await docker_runtime.destroy("abcd1234")

    @pytest.mark.asyncio
    async def test_removed_concurrently(self, docker_runtime, docker_client):
        container = MagicMock()
        container.remove.side_effect = NotFound("gone")
        docker_client.containers.get.return_value = container

        await docker_runtime.destroy("abcd1234")


class TestListAndPing:
    @pytest.mark.asyncio
    async def test_list_ids(self, docker_runtime, docker_client):
        labelled = MagicMock(labels={CONTAINER_ID_LABEL: "abcd1234"})
        labelled.name = "ide-abcd1234"
        unlabelled = MagicMock(labels={})
        unlabelled.name = "ide-legacy01"
        foreign = MagicMock(labels={})
        foreign.name = "postgres"
        docker_client.containers.list.return_value = [labelled, unlabelled, foreign]

        ids = await docker_runtime.list_ids()

        assert ids == ["abcd1234", "legacy01"]
        docker_client.containers.list.assert_called_once_with(
            all=True, filters={"label": f"{MANAGED_LABEL}=true"}
        )

    @pytest.mark.asyncio
    async def test_ping(self, docker_runtime, docker_client):
        docker_client.ping.return_value = True

        assert await docker_runtime.ping() is True

    @pytest.mark.asyncio
    async def test_close(self, docker_runtime, docker_client):
        await docker_runtime.close()

        docker_client.close.assert_called_once()
