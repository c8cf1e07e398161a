"""Pytest configuration and shared fixtures."""

import os
from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis

# Set test environment before importing config
# Use setdefault to allow environment variables to override defaults
os.environ.setdefault("API_KEY", "test-api-key-for-testing-12345")
os.environ.setdefault("RUNTIME_BACKEND", "memory")
os.environ.setdefault("STATE_BACKEND", "memory")
os.environ.setdefault("RECONCILER_ENABLED", "false")
os.environ.setdefault("IDE_DOMAIN", "ide.example.com")
os.environ.setdefault("IDE_LOCAL_BASE_URL", "http://localhost:8000")
os.environ.setdefault("NOTIFIER_RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("RATE_LIMIT_REQUESTS", "10000")
os.environ.setdefault("CAPACITY_MEMORY_THRESHOLD_PERCENT", "0")

from src.config import settings  # noqa: E402
from src.config.ide import EndpointsConfig, IDEConfig  # noqa: E402
from src.core.events import ContainerStateChanged, EventBus  # noqa: E402
from src.services.ide import (  # noqa: E402
    ContainerIdAllocator,
    ContainerLifecycleManager,
    EndpointResolver,
    InMemoryStateStore,
    StatusNotifier,
)
from src.services.ide.runtime import InMemoryRuntime  # noqa: E402


@pytest.fixture
def mock_redis():
    """Mock Redis client for testing."""
    mock_client = AsyncMock(spec=redis.Redis)

    mock_client.get = AsyncMock(return_value=None)
    mock_client.set = AsyncMock(return_value=True)
    mock_client.mget = AsyncMock(return_value=[])
    mock_client.delete = AsyncMock(return_value=1)
    mock_client.sadd = AsyncMock(return_value=1)
    mock_client.srem = AsyncMock(return_value=1)
    mock_client.sismember = AsyncMock(return_value=False)
    mock_client.scard = AsyncMock(return_value=0)
    mock_client.smembers = AsyncMock(return_value=set())
    mock_client.ping = AsyncMock(return_value=True)

    return mock_client


@pytest.fixture
def endpoints_config():
    return EndpointsConfig(
        ide_domain="ide.example.com",
        ide_remote_base_url=None,
        ide_local_base_url="http://localhost:8000",
    )


@pytest.fixture
def ide_config():
    """Lifecycle settings with short bounds so timeout tests stay fast."""
    return IDEConfig(
        ide_container_image="ide-container:test",
        ide_network="ide-test",
        ide_id_length=8,
        ide_id_max_attempts=10,
        ide_readable_ids=False,
        runtime_create_timeout=1.0,
        runtime_inspect_timeout=1.0,
        runtime_destroy_timeout=1.0,
        inactivity_timeout_seconds=600,
        management_api_url="http://orchestrator:3001",
    )


@pytest.fixture
def allocator():
    return ContainerIdAllocator()


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def runtime():
    return InMemoryRuntime()


@pytest.fixture
def resolver(endpoints_config):
    return EndpointResolver(endpoints_config)


@pytest.fixture
async def notifier():
    """Status notifier whose retries do not sleep."""
    notifier = StatusNotifier(EventBus(max_attempts=3, retry_backoff=0))
    yield notifier
    await notifier.close()


@pytest.fixture
async def lifecycle(allocator, state_store, runtime, resolver, notifier, ide_config):
    """Lifecycle manager wired to in-memory collaborators."""
    manager = ContainerLifecycleManager(
        allocator=allocator,
        state_store=state_store,
        runtime=runtime,
        resolver=resolver,
        notifier=notifier,
        config=ide_config,
    )
    yield manager
    await manager.shutdown()


@pytest.fixture
async def state_events(notifier):
    """Collect every ContainerStateChanged the notifier delivers."""
    events = []

    async def collect(event):
        events.append(event)

    unsubscribe = notifier.subscribe(collect, event_types=(ContainerStateChanged,))
    yield events
    unsubscribe()
