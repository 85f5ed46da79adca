import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Set, TypeVar

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)

REDIS_ERRORS = (RedisConnectionError, RedisTimeoutError)

T = TypeVar("T")


class RedisCrudService:
    """Session documents, budget counters, rate-limit windows and job sets in Redis.

    No operation raises on a Redis outage. It logs a warning and returns the
    empty value for that operation (None, False, 0.0 or an empty set); the
    caller decides whether that is acceptable. Not being connected counts as
    an outage.
    """

    def __init__(self, url: str, clock: Callable[[], float] = time.time) -> None:
        self._url = url
        self._clock = clock
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Open and ping the client. Calling it again while connected does nothing."""
        if self._client is not None:
            return
        client = Redis.from_url(self._url, decode_responses=True)
        self._client = client
        try:
            await client.ping()
        except REDIS_ERRORS as e:
            logger.warning("Redis ping failed: %s", e)
            self._client = None
            await client.aclose()
            raise
        # never log credentials from the URL
        logger.info("Connected to Redis at %s", self._url.rsplit("@", 1)[-1])

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        return self._client

    async def _attempt(
        self,
        op: str,
        key: str,
        fallback: T,
        action: Callable[[Redis], Awaitable[T]],
    ) -> T:
        client = self._client
        if client is None:
            return fallback
        try:
            return await action(client)
        except REDIS_ERRORS as e:
            logger.warning("Redis %s on %s failed: %s", op, key, e)
            return fallback

    async def get(self, key: str) -> str | None:
        value: Any = await self._attempt("get", key, None, lambda r: r.get(key))
        return None if value is None else str(value)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Write a string, with expiry when ``ttl_seconds`` is positive."""

        async def _write(r: Redis) -> bool:
            if ttl_seconds and ttl_seconds > 0:
                await r.setex(key, ttl_seconds, value)
            else:
                await r.set(key, value)
            return True

        return await self._attempt("set", key, False, _write)

    async def delete(self, key: str) -> bool:
        async def _delete(r: Redis) -> bool:
            await r.delete(key)
            return True

        return await self._attempt("delete", key, False, _delete)

    async def incr_float(
        self, key: str, amount: float, ttl_seconds: int | None = None
    ) -> float | None:
        """INCRBYFLOAT. The expiry is set by the first increment and never pushed back."""

        async def _incr(r: Redis) -> float | None:
            total = float(await r.incrbyfloat(key, amount))
            if ttl_seconds and ttl_seconds > 0 and await r.ttl(key) < 0:
                await r.expire(key, ttl_seconds)
            return total

        return await self._attempt("incrbyfloat", key, None, _incr)

    async def get_float(self, key: str) -> float:
        raw = await self.get(key)
        if raw is None:
            return 0.0
        try:
            return float(raw)
        except ValueError:
            logger.warning("Counter %s holds a non-number: %r", key, raw)
            return 0.0

    async def window_hit(self, key: str, window_seconds: int) -> int | None:
        """Count one hit in a sorted-set sliding window; returns the hits still inside it.

        Trim, add, count and expire go out as one MULTI/EXEC.
        """
        now = self._clock()
        member = f"{now:.6f}:{uuid.uuid4().hex[:8]}"

        async def _hit(r: Redis) -> int | None:
            pipe = r.pipeline(transaction=True)
            pipe.zremrangebyscore(key, 0, now - window_seconds)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.expire(key, window_seconds)
            _, _, count, _ = await pipe.execute()
            return int(count)

        return await self._attempt("window hit", key, None, _hit)

    async def add_member(self, key: str, member: str) -> bool:
        async def _add(r: Redis) -> bool:
            await r.sadd(key, member)
            return True

        return await self._attempt("sadd", key, False, _add)

    async def remove_member(self, key: str, member: str) -> bool:
        async def _remove(r: Redis) -> bool:
            await r.srem(key, member)
            return True

        return await self._attempt("srem", key, False, _remove)

    async def members(self, key: str) -> Set[str]:
        async def _members(r: Redis) -> Set[str]:
            return {str(m) for m in await r.smembers(key)}

        return await self._attempt("smembers", key, set(), _members)


def get_redis_crud_service() -> RedisCrudService | None:
    """A RedisCrudService for ``REDIS_URL``, or None when it is unset or blank."""
    url = (get_settings().redis_url or "").strip()
    if not url:
        return None
    return RedisCrudService(url)
