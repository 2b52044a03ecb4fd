import copy
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from loguru import logger


class SessionCache(ABC):
    """Short-TTL key/value store for conversation state and memoized results.

    Values must be JSON-compatible. Expiry is a normal event, never an error.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def close(self) -> None:
        pass


class InMemorySessionCache(SessionCache):
    """Process-local cache. Stores deep copies so callers never share state.

    Expired entries are swept every ``purge_every`` writes. Past
    ``max_entries`` the entries closest to expiry are evicted first.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 max_entries: int = 10000, purge_every: int = 256):
        self._clock = clock
        self._items: dict[str, tuple[float, Any]] = {}
        self.max_entries = max(1, max_entries)
        self.purge_every = max(1, purge_every)
        self._writes = 0

    async def get(self, key: str) -> Optional[Any]:
        item = self._items.get(key)
        if item is None:
            return None
        expires_at, value = item
        if expires_at <= self._clock():
            self._items.pop(key, None)
            return None
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._items[key] = (self._clock() + ttl_seconds, copy.deepcopy(value))
        self._writes += 1
        if self._writes % self.purge_every == 0 or len(self._items) > self.max_entries:
            self.purge_expired()
            self._evict_overflow()

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (exp, _) in self._items.items() if exp <= now]
        for key in expired:
            del self._items[key]
        if expired:
            logger.debug("Session cache purged {} expired entries", len(expired))
        return len(expired)

    def _evict_overflow(self) -> None:
        overflow = len(self._items) - self.max_entries
        if overflow <= 0:
            return
        soonest = sorted(self._items, key=lambda k: self._items[k][0])[:overflow]
        for key in soonest:
            del self._items[key]
        logger.debug("Session cache full; evicted {} entries", overflow)

    def __len__(self) -> int:
        return len(self._items)


class RedisSessionCache(SessionCache):
    """Redis-backed cache (JSON values, native TTL)."""

    def __init__(self, url: str, key_prefix: str = "concierge:"):
        self.url = url
        self.key_prefix = key_prefix
        self._client = None

    def _ensure_client(self):
        if self._client is None:
            import redis.asyncio as redis
            self._client = redis.from_url(self.url, decode_responses=True)
            logger.info("Redis session cache connected: {}", self.url)
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._ensure_client().get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._ensure_client().set(self._key(key), json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self._ensure_client().delete(self._key(key))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
