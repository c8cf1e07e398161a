"""Container descriptor storage.

Descriptors are written with a compare-and-set on ``generation``: a writer
passes the generation it read, and the write is rejected if someone else
persisted a newer version in the meantime. Every successful write bumps the
generation by one.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import WatchError

from ...models.container import Container, ContainerStatus

logger = structlog.get_logger(__name__)


class StaleGenerationError(Exception):
    """A compare-and-set write lost against a newer descriptor."""

    def __init__(self, container_id: str, expected: Optional[int], actual: Optional[int]):
        self.container_id = container_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale write for container {container_id}: "
            f"expected generation {expected}, found {actual}"
        )


class ContainerStateStore(ABC):
    """Persists container descriptors and the owner -> active container map."""

    @abstractmethod
    async def get(self, container_id: str) -> Optional[Container]:
        pass

    @abstractmethod
    async def save(
        self, container: Container, expected_generation: Optional[int] = None
    ) -> Container:
        """Persist a descriptor.

        Args:
            container: Descriptor to write. Its ``generation`` is updated in
                place to the newly stored value.
            expected_generation: Generation the caller last read. ``None``
                inserts a new descriptor and fails if one already exists.

        Raises:
            StaleGenerationError: If the stored generation differs.
        """

    @abstractmethod
    async def delete(self, container_id: str) -> None:
        pass

    @abstractmethod
    async def list(self, status: Optional[ContainerStatus] = None) -> List[Container]:
        pass

    @abstractmethod
    async def get_owner_container_id(self, owner_key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set_owner(self, owner_key: str, container_id: str) -> None:
        pass

    @abstractmethod
    async def clear_owner(self, owner_key: str, container_id: str) -> None:
        """Remove the owner mapping only if it still points at ``container_id``."""

    async def get_active_for_owner(self, owner_key: str) -> Optional[Container]:
        """Return the owner's non-terminal container, if any."""
        container_id = await self.get_owner_container_id(owner_key)
        if not container_id:
            return None
        container = await self.get(container_id)
        if container is None or container.is_terminal:
            return None
        return container

    async def ping(self) -> bool:
        return True


class InMemoryStateStore(ContainerStateStore):
    """Single-process store. Stored descriptors are copies, never aliases."""

    def __init__(self):
        self._containers: Dict[str, Container] = {}
        self._owners: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, container_id: str) -> Optional[Container]:
        container = self._containers.get(container_id)
        return container.model_copy(deep=True) if container else None

    async def save(
        self, container: Container, expected_generation: Optional[int] = None
    ) -> Container:
        async with self._lock:
            current = self._containers.get(container.id)
            actual = current.generation if current else None
            if actual != expected_generation:
                raise StaleGenerationError(container.id, expected_generation, actual)
            container.generation = (actual or 0) + 1
            self._containers[container.id] = container.model_copy(deep=True)
            return container

    async def delete(self, container_id: str) -> None:
        async with self._lock:
            self._containers.pop(container_id, None)

    async def list(self, status: Optional[ContainerStatus] = None) -> List[Container]:
        return [
            c.model_copy(deep=True)
            for c in self._containers.values()
            if status is None or c.status == status
        ]

    async def get_owner_container_id(self, owner_key: str) -> Optional[str]:
        return self._owners.get(owner_key)

    async def set_owner(self, owner_key: str, container_id: str) -> None:
        self._owners[owner_key] = container_id

    async def clear_owner(self, owner_key: str, container_id: str) -> None:
        if self._owners.get(owner_key) == container_id:
            del self._owners[owner_key]


class RedisStateStore(ContainerStateStore):
    """Redis-backed store shared by every orchestrator instance.

    Layout (``{prefix}`` defaults to ``ide``):
        {prefix}:container:{id}   JSON descriptor
        {prefix}:owner:{owner}    active container ID for an owner
        {prefix}:containers       set of known container IDs
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "ide"):
        self._redis = redis_client
        self._prefix = key_prefix
        self._index_key = f"{key_prefix}:containers"

    def _container_key(self, container_id: str) -> str:
        return f"{self._prefix}:container:{container_id}"

    def _owner_key(self, owner_key: str) -> str:
        return f"{self._prefix}:owner:{owner_key}"

    async def get(self, container_id: str) -> Optional[Container]:
        raw = await self._redis.get(self._container_key(container_id))
        if raw is None:
            return None
        return Container.model_validate_json(raw)

    async def save(
        self, container: Container, expected_generation: Optional[int] = None
    ) -> Container:
        key = self._container_key(container.id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                actual = Container.model_validate_json(raw).generation if raw else None
                if actual != expected_generation:
                    raise StaleGenerationError(
                        container.id, expected_generation, actual
                    )
                new_generation = (actual or 0) + 1
                payload = container.model_copy(update={"generation": new_generation})
                pipe.multi()
                pipe.set(key, payload.model_dump_json())
                pipe.sadd(self._index_key, container.id)
                await pipe.execute()
            except WatchError:
                raise StaleGenerationError(container.id, expected_generation, None)

        container.generation = new_generation
        return container

    async def delete(self, container_id: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._container_key(container_id))
            pipe.srem(self._index_key, container_id)
            await pipe.execute()

    async def list(self, status: Optional[ContainerStatus] = None) -> List[Container]:
        container_ids = await self._redis.smembers(self._index_key)
        if not container_ids:
            return []
        ids = sorted(container_ids)
        raw_values = await self._redis.mget([self._container_key(i) for i in ids])
        containers = []
        for container_id, raw in zip(ids, raw_values):
            if raw is None:
                # Descriptor expired or was deleted by another instance
                await self._redis.srem(self._index_key, container_id)
                continue
            container = Container.model_validate_json(raw)
            if status is None or container.status == status:
                containers.append(container)
        return containers

    async def get_owner_container_id(self, owner_key: str) -> Optional[str]:
        return await self._redis.get(self._owner_key(owner_key))

    async def set_owner(self, owner_key: str, container_id: str) -> None:
        await self._redis.set(self._owner_key(owner_key), container_id)

    async def clear_owner(self, owner_key: str, container_id: str) -> None:
        key = self._owner_key(owner_key)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current != container_id:
                    await pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
            except WatchError:
                logger.debug(
                    "Owner mapping changed during clear",
                    owner_key=owner_key,
                    container_id=container_id,
                )

    async def ping(self) -> bool:
        return bool(await self._redis.ping())
