import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Set, Tuple

logger = logging.getLogger(__name__)


class InMemoryCrudService:
    """Process-local stand-in for ``RedisCrudService`` with the same async API.

    Used when no Redis URL is configured. Every mutation runs under one
    asyncio lock, which gives the counters the same atomicity Redis gives them
    within a single process.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, float | None]] = {}
        self._windows: Dict[str, Deque[float]] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _live(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        async with self._lock:
            self._values[key] = (value, expires_at)
        return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            self._values.pop(key, None)
            self._windows.pop(key, None)
            self._sets.pop(key, None)
        return True

    async def incr_float(
        self, key: str, amount: float, ttl_seconds: int | None = None
    ) -> float | None:
        async with self._lock:
            current = self._live(key)
            entry = self._values.get(key)
            expires_at = entry[1] if entry else None
            if expires_at is None and ttl_seconds:
                expires_at = self._clock() + ttl_seconds
            value = (float(current) if current is not None else 0.0) + amount
            self._values[key] = (repr(value), expires_at)
            return value

    async def get_float(self, key: str) -> float:
        raw = self._live(key)
        return float(raw) if raw is not None else 0.0

    async def window_hit(self, key: str, window_seconds: int) -> int | None:
        now = self._clock()
        async with self._lock:
            hits = self._windows.setdefault(key, deque())
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()
            hits.append(now)
            return len(hits)

    async def add_member(self, key: str, member: str) -> bool:
        async with self._lock:
            self._sets.setdefault(key, set()).add(member)
        return True

    async def remove_member(self, key: str, member: str) -> bool:
        async with self._lock:
            self._sets.get(key, set()).discard(member)
        return True

    async def members(self, key: str) -> Set[str]:
        return set(self._sets.get(key, set()))
