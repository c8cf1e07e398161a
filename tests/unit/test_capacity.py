"""Unit tests for the host capacity guard."""

import pytest

from src.models.container import Container, ContainerStatus, ServiceUrls
from src.models.errors import CapacityExceededError
from src.services.ide.capacity import CapacityGuard
from src.services.ide.state import InMemoryStateStore


def make_container(container_id: str, owner_key: str) -> Container:
    urls = ServiceUrls(
        terminal=f"https://ide.example.com/terminal/{container_id}",
        vnc=f"https://ide.example.com/vnc/{container_id}",
        web_server=f"https://ide.example.com/web/{container_id}",
        code_server=f"https://ide.example.com/code/{container_id}",
    )
    return Container(
        id=container_id, owner_key=owner_key, bucket_ref="bucket", urls=urls
    )


async def store_with(*statuses):
    store = InMemoryStateStore()
    for index, status in enumerate(statuses):
        container = make_container(f"cont-{index:04d}", owner_key=f"owner-{index}")
        await store.save(container)
        if status != ContainerStatus.PENDING:
            container.transition_to(ContainerStatus.STARTING)
            await store.save(container, container.generation)
        if status == ContainerStatus.RUNNING:
            container.transition_to(ContainerStatus.RUNNING)
            await store.save(container, container.generation)
    return store


class TestCapacityGuard:
    """Tests for refusing starts on a saturated host."""

    @pytest.mark.asyncio
    async def test_usage_counts_live_containers(self):
        store = await store_with(
            ContainerStatus.STARTING, ContainerStatus.RUNNING, ContainerStatus.PENDING
        )
        guard = CapacityGuard(store, usage_reader=lambda: (12.5, 40.0))

        usage = await guard.usage()

        assert usage.live_containers == 2
        assert usage.to_dict() == {
            "cpu_percent": 12.5,
            "memory_percent": 40.0,
            "live_containers": 2,
        }

    @pytest.mark.asyncio
    async def test_memory_pressure_refuses(self):
        guard = CapacityGuard(
            InMemoryStateStore(),
            memory_threshold_percent=90.0,
            usage_reader=lambda: (5.0, 93.2),
        )

        with pytest.raises(CapacityExceededError) as exc_info:
            await guard.ensure_capacity()

        assert exc_info.value.status_code == 503
        assert exc_info.value.retry_after == 30
        assert "93.2%" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_high_cpu_only_warns(self):
        guard = CapacityGuard(
            InMemoryStateStore(),
            cpu_threshold_percent=90.0,
            usage_reader=lambda: (99.0, 20.0),
        )

        usage = await guard.ensure_capacity()

        assert usage.cpu_percent == 99.0

    @pytest.mark.asyncio
    async def test_container_ceiling(self):
        store = await store_with(ContainerStatus.RUNNING, ContainerStatus.STARTING)
        guard = CapacityGuard(
            store, max_containers=2, usage_reader=lambda: (1.0, 1.0)
        )

        with pytest.raises(CapacityExceededError, match="limit of 2"):
            await guard.ensure_capacity()

        guard.max_containers = 3
        await guard.ensure_capacity()

    @pytest.mark.asyncio
    async def test_zero_thresholds_disable_checks(self):
        store = await store_with(ContainerStatus.RUNNING)
        guard = CapacityGuard(
            store,
            max_containers=0,
            memory_threshold_percent=0,
            cpu_threshold_percent=0,
            usage_reader=lambda: (100.0, 100.0),
        )

        usage = await guard.ensure_capacity()

        assert usage.live_containers == 1

    @pytest.mark.asyncio
    async def test_error_response_carries_retry_hint(self):
        exc = CapacityExceededError("Container limit of 1 reached")

        body = exc.to_response().model_dump(by_alias=True, exclude_none=True)

        assert body["error_type"] == "resource_exhausted"
        assert body["retryAfter"] == 30
        assert body["details"][0]["code"] == "resource_limit_exceeded"
        assert "containerId" not in body
