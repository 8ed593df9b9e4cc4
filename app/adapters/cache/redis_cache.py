"""Redis-backed cache (redis-py asyncio).

Values are JSON-encoded; counters are plain Redis integers (which decode as
JSON numbers). Every write carries a TTL.

Circuit breaker
  Opens after FAILURE_THRESHOLD consecutive Redis errors.
  Allows a trial call after RECOVERY_TIMEOUT seconds (half-open).
  While open, calls return the usual failure values without touching Redis.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Mapping, Sequence, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from app.adapters.cache.base import CACHE_UNAVAILABLE, AbstractCache, CacheStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class CircuitBreaker:
    """Three-state breaker (CLOSED -> OPEN -> HALF-OPEN)."""

    FAILURE_THRESHOLD = 3
    RECOVERY_TIMEOUT = 60

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None

    @property
    def is_open(self) -> bool:
        if self._opened_at is None:
            return False
        if self._clock() - self._opened_at >= self.RECOVERY_TIMEOUT:
            return False  # half-open
        return True

    @property
    def failures(self) -> int:
        return self._failures

    def record_success(self) -> None:
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self._failures < self.FAILURE_THRESHOLD:
            return
        reopening = self._opened_at is not None
        self._opened_at = self._clock()
        if not reopening:
            logger.error(
                "cache.circuit_opened",
                extra={"failures": self._failures, "recovery_in_s": self.RECOVERY_TIMEOUT},
            )


def _encode(value: Any) -> str:
    return json.dumps(value, default=str)


def _decode(raw: Any) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


class RedisCache(AbstractCache):
    """AbstractCache over a ``redis.asyncio.Redis`` client.

    The client must be created with ``decode_responses=True``.
    """

    def __init__(
        self,
        client: Redis,
        *,
        default_ttl: int = 3600,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._client = client
        self._default_ttl = default_ttl
        self._breaker = breaker or CircuitBreaker()

    @property
    def client(self) -> Redis:
        return self._client

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def _call(self, op: str, action: Callable[[], Awaitable[T]], fallback: Any) -> T | Any:
        if self._breaker.is_open:
            logger.warning("cache.circuit_open_skip", extra={"op": op})
            return fallback
        try:
            result = await action()
        except _CACHE_ERRORS as exc:
            self._breaker.record_failure()
            logger.error(
                "cache.error",
                extra={"op": op, "error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            return fallback
        self._breaker.record_success()
        return result

    async def get(self, key: str) -> Any:
        async def action() -> Any:
            return _decode(await self._client.get(key))

        return await self._call("get", action, CACHE_UNAVAILABLE)

    async def set(self, key: str, value: Any, *, ttl: int | None = None) -> bool:
        async def action() -> bool:
            return bool(await self._client.set(key, _encode(value), ex=ttl or self._default_ttl))

        return await self._call("set", action, False)

    async def incr(self, key: str, amount: int = 1, *, ttl: int | None = None) -> int | CacheStatus:
        expiry = ttl or self._default_ttl

        async def action() -> int:
            # EXPIRE NX only sets a TTL on a key that has none, so an existing
            # window is never extended and a key left without one heals.
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incrby(key, amount)
                pipe.expire(key, expiry, nx=True)
                value, _ = await pipe.execute()
            return int(value)

        return await self._call("incr", action, CACHE_UNAVAILABLE)

    async def decr(self, key: str, amount: int = 1) -> int | CacheStatus:
        async def action() -> int:
            return int(await self._client.decrby(key, amount))

        return await self._call("decr", action, CACHE_UNAVAILABLE)

    async def expire(self, key: str, ttl: int) -> bool:
        async def action() -> bool:
            return bool(await self._client.expire(key, ttl))

        return await self._call("expire", action, False)

    async def ttl(self, key: str) -> int | CacheStatus:
        async def action() -> int:
            return int(await self._client.ttl(key))

        return await self._call("ttl", action, CACHE_UNAVAILABLE)

    async def exists(self, key: str) -> bool | CacheStatus:
        async def action() -> bool:
            return await self._client.exists(key) > 0

        return await self._call("exists", action, CACHE_UNAVAILABLE)

    async def delete(self, *keys: str) -> int | CacheStatus:
        if not keys:
            return 0

        async def action() -> int:
            return int(await self._client.delete(*keys))

        return await self._call("delete", action, CACHE_UNAVAILABLE)

    async def delete_if_unchanged(self, expected: Mapping[str, Any]) -> bool | CacheStatus:
        if not expected:
            return False
        keys = list(expected)

        async def action() -> bool:
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.watch(*keys)
                current = [_decode(raw) for raw in await pipe.mget(keys)]
                if current != [expected[key] for key in keys]:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(*keys)
                try:
                    await pipe.execute()
                except WatchError:
                    return False
            return True

        return await self._call("delete_if_unchanged", action, CACHE_UNAVAILABLE)

    async def set_nx(self, key: str, value: Any, *, ttl: int) -> bool | CacheStatus:
        async def action() -> bool:
            return bool(await self._client.set(key, _encode(value), ex=ttl, nx=True))

        return await self._call("set_nx", action, CACHE_UNAVAILABLE)

    async def mget(self, keys: Sequence[str]) -> list[Any] | CacheStatus:
        if not keys:
            return []

        async def action() -> list[Any]:
            return [_decode(raw) for raw in await self._client.mget(list(keys))]

        return await self._call("mget", action, CACHE_UNAVAILABLE)

    async def mset(self, mapping: Mapping[str, Any], *, ttl: int | None = None) -> bool:
        if not mapping:
            return True
        expiry = ttl or self._default_ttl

        async def action() -> bool:
            async with self._client.pipeline(transaction=True) as pipe:
                for key, value in mapping.items():
                    pipe.set(key, _encode(value), ex=expiry)
                results = await pipe.execute()
            return all(results)

        return await self._call("mset", action, False)

    async def ping(self) -> bool:
        async def action() -> bool:
            return bool(await self._client.ping())

        return await self._call("ping", action, False)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except _CACHE_ERRORS as exc:
            logger.warning("cache.close_failed", extra={"error_msg": str(exc)})
