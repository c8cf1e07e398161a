"""Container identifier allocation.

IDs double as DNS labels and URL path segments, so they are restricted to
lowercase alphanumerics with internal hyphens. The set of IDs in use lives
behind an ``IdRegistry`` so a single process can use an in-memory set while
multiple orchestrator instances share a Redis set.
"""

import asyncio
import re
import secrets
import string
from abc import ABC, abstractmethod
from typing import Optional, Set

import redis.asyncio as redis
import structlog

from ...models.errors import AllocationExhaustedError, InvalidContainerIdError

logger = structlog.get_logger(__name__)

ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{2,30}[a-z0-9]$")
ID_ALPHABET = string.ascii_lowercase + string.digits

ADJECTIVES = (
    "red", "blue", "green", "yellow", "purple", "orange",
    "fast", "slow", "happy", "calm", "bright", "dark",
    "cool", "warm", "swift", "bold", "quiet", "loud",
)
NOUNS = (
    "tiger", "eagle", "shark", "wolf", "bear", "lion",
    "falcon", "hawk", "fox", "lynx", "otter", "panda",
    "raven", "cobra", "viper", "gecko", "koala", "lemur",
)


def validate_id(container_id: Optional[str]) -> bool:
    """Check that a string is a usable container ID (4-32 char DNS label)."""
    if not container_id or not isinstance(container_id, str):
        return False
    return ID_PATTERN.match(container_id) is not None


class IdRegistry(ABC):
    """Storage for the set of container IDs currently in use."""

    @abstractmethod
    async def add_if_absent(self, container_id: str) -> bool:
        """Atomically add an ID. Returns False if it was already present."""

    @abstractmethod
    async def remove(self, container_id: str) -> bool:
        pass

    @abstractmethod
    async def contains(self, container_id: str) -> bool:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass


class InMemoryIdRegistry(IdRegistry):
    """Process-local registry guarded by an asyncio lock."""

    def __init__(self):
        self._ids: Set[str] = set()
        self._lock = asyncio.Lock()

    async def add_if_absent(self, container_id: str) -> bool:
        async with self._lock:
            if container_id in self._ids:
                return False
            self._ids.add(container_id)
            return True

    async def remove(self, container_id: str) -> bool:
        async with self._lock:
            if container_id not in self._ids:
                return False
            self._ids.discard(container_id)
            return True

    async def contains(self, container_id: str) -> bool:
        return container_id in self._ids

    async def count(self) -> int:
        return len(self._ids)

    async def clear(self) -> None:
        async with self._lock:
            self._ids.clear()


class RedisIdRegistry(IdRegistry):
    """Registry shared across instances through a Redis set.

    ``SADD`` returns the number of members actually added, which makes it an
    atomic check-and-set for a single ID.
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "ide"):
        self._redis = redis_client
        self._key = f"{key_prefix}:container-ids"

    async def add_if_absent(self, container_id: str) -> bool:
        added = await self._redis.sadd(self._key, container_id)
        return added == 1

    async def remove(self, container_id: str) -> bool:
        removed = await self._redis.srem(self._key, container_id)
        return removed == 1

    async def contains(self, container_id: str) -> bool:
        return bool(await self._redis.sismember(self._key, container_id))

    async def count(self) -> int:
        return int(await self._redis.scard(self._key))

    async def clear(self) -> None:
        await self._redis.delete(self._key)


class ContainerIdAllocator:
    """Issues collision-free container IDs and tracks which are in use."""

    def __init__(
        self,
        registry: Optional[IdRegistry] = None,
        default_length: int = 8,
        max_attempts: int = 10,
    ):
        self._registry = registry or InMemoryIdRegistry()
        self._default_length = default_length
        self._max_attempts = max_attempts

    @staticmethod
    def validate_id(container_id: Optional[str]) -> bool:
        return validate_id(container_id)

    async def generate_unique_id(
        self, length: Optional[int] = None, max_attempts: Optional[int] = None
    ) -> str:
        """Draw random IDs until an unused one is found and claim it.

        Raises:
            AllocationExhaustedError: If every attempt collided.
        """
        length = length or self._default_length
        max_attempts = max_attempts or self._max_attempts
        if length < 4 or length > 32:
            raise ValueError("Container ID length must be between 4 and 32")

        for attempt in range(1, max_attempts + 1):
            candidate = "".join(secrets.choice(ID_ALPHABET) for _ in range(length))
            if await self._registry.add_if_absent(candidate):
                logger.debug(
                    "Allocated container ID", container_id=candidate, attempt=attempt
                )
                return candidate
            logger.debug("Container ID collision", container_id=candidate)

        logger.error("Container ID allocation exhausted", attempts=max_attempts)
        raise AllocationExhaustedError(max_attempts)

    async def generate_readable_id(self) -> str:
        """Allocate an ``adjective-noun-NN`` ID, falling back to a random one."""
        candidate = (
            f"{secrets.choice(ADJECTIVES)}-{secrets.choice(NOUNS)}-"
            f"{secrets.randbelow(100)}"
        )
        if await self._registry.add_if_absent(candidate):
            return candidate
        logger.debug("Readable ID collision, falling back", container_id=candidate)
        return await self.generate_unique_id()

    async def mark_id_as_used(self, container_id: str) -> bool:
        """Claim an externally sourced ID. Returns False if already claimed.

        Raises:
            InvalidContainerIdError: If the ID is not a valid DNS label.
        """
        if not self.validate_id(container_id):
            raise InvalidContainerIdError(container_id)
        return await self._registry.add_if_absent(container_id)

    async def release_id(self, container_id: str) -> bool:
        released = await self._registry.remove(container_id)
        if released:
            logger.debug("Released container ID", container_id=container_id)
        return released

    async def is_id_in_use(self, container_id: str) -> bool:
        return await self._registry.contains(container_id)

    async def get_used_id_count(self) -> int:
        return await self._registry.count()

    async def clear_all_ids(self) -> None:
        """Forget every claimed ID. Only meant for tests and resets."""
        await self._registry.clear()
        logger.warning("Cleared all container IDs")
