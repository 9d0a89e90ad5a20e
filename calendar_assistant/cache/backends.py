"""Shared cache tier: an in-process store and a Redis-backed store."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from calendar_assistant.errors import CacheError

LOGGER = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Minimal key/value + set interface the event cache needs."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value or None when missing or expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        """Store a value with an expiry."""

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        """Remove keys; missing keys are ignored."""

    @abstractmethod
    async def sadd(self, set_key: str, member: str) -> None:
        """Add a member to a set."""

    @abstractmethod
    async def smembers(self, set_key: str) -> set[str]:
        """Return all members of a set."""

    @abstractmethod
    async def srem(self, set_key: str, *members: str) -> None:
        """Remove members from a set."""

    async def close(self) -> None:
        return None


class InMemoryCacheBackend(CacheBackend):
    """Single-process shared tier with clock-driven expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: dict[str, tuple[float, str]] = {}
        self._sets: dict[str, set[str]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        now = self._clock()
        self._prune(now)
        self._values[key] = (now + ttl_seconds, value)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._values.pop(key, None)

    def _prune(self, now: float) -> None:
        expired = {key for key, (expires_at, _) in self._values.items() if expires_at <= now}
        if not expired:
            return
        for key in expired:
            del self._values[key]
        for set_key in list(self._sets):
            self._sets[set_key] -= expired
            if not self._sets[set_key]:
                del self._sets[set_key]

    async def sadd(self, set_key: str, member: str) -> None:
        self._sets.setdefault(set_key, set()).add(member)

    async def smembers(self, set_key: str) -> set[str]:
        return set(self._sets.get(set_key, set()))

    async def srem(self, set_key: str, *members: str) -> None:
        current = self._sets.get(set_key)
        if current is None:
            return
        current.difference_update(members)
        if not current:
            del self._sets[set_key]


class RedisCacheBackend(CacheBackend):
    """Redis-backed shared tier. Connection errors surface as CacheError."""

    def __init__(self, redis_url: str, connect_timeout: float = 5.0, socket_timeout: float = 5.0) -> None:
        self._redis_url = redis_url
        self._connect_timeout = connect_timeout
        self._socket_timeout = socket_timeout
        self._client: aioredis.Redis | None = None

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self._connect_timeout,
                socket_timeout=self._socket_timeout,
            )
        return self._client

    async def get(self, key: str) -> str | None:
        try:
            return await self._get_client().get(key)
        except RedisError as exc:
            raise CacheError(f"Redis get failed: {exc}") from exc

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        try:
            await self._get_client().set(key, value, ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            raise CacheError(f"Redis set failed: {exc}") from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._get_client().delete(*keys)
        except RedisError as exc:
            raise CacheError(f"Redis delete failed: {exc}") from exc

    async def sadd(self, set_key: str, member: str) -> None:
        try:
            await self._get_client().sadd(set_key, member)
        except RedisError as exc:
            raise CacheError(f"Redis sadd failed: {exc}") from exc

    async def smembers(self, set_key: str) -> set[str]:
        try:
            return set(await self._get_client().smembers(set_key))
        except RedisError as exc:
            raise CacheError(f"Redis smembers failed: {exc}") from exc

    async def srem(self, set_key: str, *members: str) -> None:
        if not members:
            return
        try:
            await self._get_client().srem(set_key, *members)
        except RedisError as exc:
            raise CacheError(f"Redis srem failed: {exc}") from exc

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            LOGGER.info("Redis cache connection closed")
