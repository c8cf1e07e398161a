"""Unit tests for container descriptor storage."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import WatchError

from src.models.container import Container, ContainerStatus, ServiceUrls
from src.services.ide.state import (
    InMemoryStateStore,
    RedisStateStore,
    StaleGenerationError,
)


def make_container(container_id="abcd1234", owner_key="owner-1", **kwargs) -> Container:
    urls = ServiceUrls(
        terminal=f"https://ide.example.com/terminal/{container_id}",
        vnc=f"https://ide.example.com/vnc/{container_id}",
        web_server=f"https://ide.example.com/web/{container_id}",
        code_server=f"https://ide.example.com/code/{container_id}",
    )
    return Container(
        id=container_id, owner_key=owner_key, bucket_ref="bucket", urls=urls, **kwargs
    )


def make_pipeline(mock_redis, stored=None, execute_error=None):
    """Attach a fake transactional pipeline to a mocked Redis client."""
    pipe = MagicMock()
    pipe.watch = AsyncMock()
    pipe.unwatch = AsyncMock()
    pipe.get = AsyncMock(return_value=stored)
    pipe.execute = AsyncMock(side_effect=execute_error, return_value=[True, 1])

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=pipe)
    context.__aexit__ = AsyncMock(return_value=False)
    mock_redis.pipeline = MagicMock(return_value=context)
    return pipe


class TestInMemoryStateStore:
    """Tests for compare-and-set semantics of the in-memory store."""

    @pytest.mark.asyncio
    async def test_insert_then_update(self):
        store = InMemoryStateStore()
        container = make_container()

        await store.save(container)
        assert container.generation == 1

        container.transition_to(ContainerStatus.STARTING)
        await store.save(container, expected_generation=1)

        stored = await store.get("abcd1234")
        assert stored.generation == 2
        assert stored.status == ContainerStatus.STARTING

    @pytest.mark.asyncio
    async def test_insert_existing_rejected(self):
        store = InMemoryStateStore()
        await store.save(make_container())

        with pytest.raises(StaleGenerationError):
            await store.save(make_container())

    @pytest.mark.asyncio
    async def test_stale_write_rejected(self):
        """The second of two writers holding the same generation loses."""
        store = InMemoryStateStore()
        await store.save(make_container())
        first = await store.get("abcd1234")
        second = await store.get("abcd1234")

        first.transition_to(ContainerStatus.STARTING)
        await store.save(first, first.generation)
        second.transition_to(ContainerStatus.FAILED)

        with pytest.raises(StaleGenerationError) as exc_info:
            await store.save(second, second.generation)

        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 2
        assert (await store.get("abcd1234")).status == ContainerStatus.STARTING

    @pytest.mark.asyncio
    async def test_get_returns_copy(self):
        store = InMemoryStateStore()
        await store.save(make_container())

        copy = await store.get("abcd1234")
        copy.status = ContainerStatus.RUNNING

        assert (await store.get("abcd1234")).status == ContainerStatus.PENDING

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self):
        store = InMemoryStateStore()
        await store.save(make_container("aaaa1111"))
        await store.save(
            make_container("bbbb2222", status=ContainerStatus.RUNNING)
        )

        running = await store.list(ContainerStatus.RUNNING)

        assert [c.id for c in running] == ["bbbb2222"]
        assert len(await store.list()) == 2

    @pytest.mark.asyncio
    async def test_owner_mapping(self):
        store = InMemoryStateStore()
        container = make_container(status=ContainerStatus.RUNNING)
        await store.save(container)
        await store.set_owner("owner-1", container.id)

        active = await store.get_active_for_owner("owner-1")
        assert active.id == container.id

        # Clearing for a different container leaves the mapping alone
        await store.clear_owner("owner-1", "other-id")
        assert await store.get_owner_container_id("owner-1") == container.id

        await store.clear_owner("owner-1", container.id)
        assert await store.get_owner_container_id("owner-1") is None

    @pytest.mark.asyncio
    async def test_terminal_container_is_not_active(self):
        store = InMemoryStateStore()
        await store.save(make_container(status=ContainerStatus.KILLED))
        await store.set_owner("owner-1", "abcd1234")

        assert await store.get_active_for_owner("owner-1") is None

    @pytest.mark.asyncio
    async def test_delete(self):
        store = InMemoryStateStore()
        await store.save(make_container())

        await store.delete("abcd1234")

        assert await store.get("abcd1234") is None


class TestRedisStateStore:
    """Tests for the Redis-backed store against a mocked client."""

    @pytest.mark.asyncio
    async def test_get_parses_json(self, mock_redis):
        container = make_container(status=ContainerStatus.RUNNING, generation=4)
        mock_redis.get.return_value = container.model_dump_json()
        store = RedisStateStore(mock_redis, key_prefix="ide")

        loaded = await store.get("abcd1234")

        mock_redis.get.assert_awaited_with("ide:container:abcd1234")
        assert loaded.status == ContainerStatus.RUNNING
        assert loaded.generation == 4

    @pytest.mark.asyncio
    async def test_get_missing(self, mock_redis):
        store = RedisStateStore(mock_redis)

        assert await store.get("abcd1234") is None

    @pytest.mark.asyncio
    async def test_insert(self, mock_redis):
        pipe = make_pipeline(mock_redis, stored=None)
        store = RedisStateStore(mock_redis, key_prefix="ide")
        container = make_container()

        await store.save(container)

        assert container.generation == 1
        pipe.watch.assert_awaited_with("ide:container:abcd1234")
        pipe.multi.assert_called_once()
        key, payload = pipe.set.call_args.args
        assert key == "ide:container:abcd1234"
        assert json.loads(payload)["generation"] == 1
        pipe.sadd.assert_called_with("ide:containers", "abcd1234")

    @pytest.mark.asyncio
    async def test_stale_generation(self, mock_redis):
        stored = make_container(generation=3).model_dump_json()
        pipe = make_pipeline(mock_redis, stored=stored)
        store = RedisStateStore(mock_redis)

        with pytest.raises(StaleGenerationError):
            await store.save(make_container(generation=1), expected_generation=1)

        pipe.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_watch_error_is_stale(self, mock_redis):
        """A concurrent write between WATCH and EXEC loses the compare-and-set."""
        stored = make_container(generation=1).model_dump_json()
        make_pipeline(mock_redis, stored=stored, execute_error=WatchError())
        store = RedisStateStore(mock_redis)

        with pytest.raises(StaleGenerationError):
            await store.save(make_container(generation=1), expected_generation=1)

    @pytest.mark.asyncio
    async def test_list_prunes_missing_entries(self, mock_redis):
        mock_redis.smembers.return_value = {"aaaa1111", "bbbb2222"}
        mock_redis.mget.return_value = [
            make_container("aaaa1111", status=ContainerStatus.RUNNING).model_dump_json(),
            None,
        ]
        store = RedisStateStore(mock_redis)

        containers = await store.list()

        assert [c.id for c in containers] == ["aaaa1111"]
        mock_redis.srem.assert_awaited_with("ide:containers", "bbbb2222")

    @pytest.mark.asyncio
    async def test_owner_keys(self, mock_redis):
        mock_redis.get.return_value = "abcd1234"
        store = RedisStateStore(mock_redis, key_prefix="ide")

        await store.set_owner("user-1:bucket", "abcd1234")
        owner_container = await store.get_owner_container_id("user-1:bucket")

        mock_redis.set.assert_awaited_with("ide:owner:user-1:bucket", "abcd1234")
        assert owner_container == "abcd1234"

    @pytest.mark.asyncio
    async def test_clear_owner_only_when_matching(self, mock_redis):
        pipe = make_pipeline(mock_redis, stored="other-id")
        store = RedisStateStore(mock_redis)

        await store.clear_owner("owner-1", "abcd1234")

        pipe.unwatch.assert_awaited_once()
        pipe.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_ping(self, mock_redis):
        store = RedisStateStore(mock_redis)

        assert await store.ping() is True
