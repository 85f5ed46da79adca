import logging
from typing import Protocol, Set

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .memory import InMemoryCrudService
from .redis import get_redis_crud_service

logger = logging.getLogger(__name__)


class CrudStore(Protocol):
    """The key/value and counter operations the engine relies on."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def incr_float(
        self, key: str, amount: float, ttl_seconds: int | None = None
    ) -> float | None: ...

    async def get_float(self, key: str) -> float: ...

    async def window_hit(self, key: str, window_seconds: int) -> int | None: ...

    async def add_member(self, key: str, member: str) -> bool: ...

    async def remove_member(self, key: str, member: str) -> bool: ...

    async def members(self, key: str) -> Set[str]: ...

    async def close(self) -> None: ...


async def open_crud_store() -> CrudStore:
    """Connect to Redis when configured, otherwise fall back to process memory."""
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        logger.info("REDIS_URL not set; using in-memory session and counter store")
        return InMemoryCrudService()
    try:
        await redis_crud.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        logger.warning("Redis unavailable, using in-memory store: %s", e)
        return InMemoryCrudService()
    return redis_crud
