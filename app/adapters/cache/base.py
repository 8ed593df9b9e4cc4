"""Cache interfaces.

Services depend on this abstraction (not on redis-py) so the backend can be
swapped or disabled without touching the usage-limit logic.

Failure contract: implementations never raise transport errors. Reads and
counters return ``CACHE_UNAVAILABLE`` instead; writes return ``False``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Mapping, Sequence


class CacheStatus(Enum):
    """Typed signal returned instead of a value when the cache is unreachable."""

    UNAVAILABLE = "cache_unavailable"


CACHE_UNAVAILABLE = CacheStatus.UNAVAILABLE


def is_unavailable(value: Any) -> bool:
    """Return True if ``value`` is the unavailable signal."""
    return value is CACHE_UNAVAILABLE


class AbstractCache(ABC):
    """Async key-value cache with TTLs and atomic counters."""

    @property
    def enabled(self) -> bool:
        """Whether a real backend is configured."""
        return True

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Return the decoded value, ``None`` on miss, or ``CACHE_UNAVAILABLE``."""
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: Any, *, ttl: int | None = None) -> bool:
        """Store ``value`` with a TTL (backend default when ``ttl`` is None)."""
        raise NotImplementedError

    @abstractmethod
    async def incr(self, key: str, amount: int = 1, *, ttl: int | None = None) -> int | CacheStatus:
        """Atomically add ``amount``; a key created here gets ``ttl``.

        Returns:
            The post-increment value or ``CACHE_UNAVAILABLE``.
        """
        raise NotImplementedError

    @abstractmethod
    async def decr(self, key: str, amount: int = 1) -> int | CacheStatus:
        """Atomically subtract ``amount``; returns the post-decrement value."""
        raise NotImplementedError

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def ttl(self, key: str) -> int | CacheStatus:
        """Remaining seconds; -1 when the key has no TTL, -2 when it is missing."""
        raise NotImplementedError

    @abstractmethod
    async def exists(self, key: str) -> bool | CacheStatus:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, *keys: str) -> int | CacheStatus:
        """Remove keys; returns how many existed."""
        raise NotImplementedError

    @abstractmethod
    async def delete_if_unchanged(self, expected: Mapping[str, Any]) -> bool | CacheStatus:
        """Delete the keys of ``expected`` only if all still hold those values.

        The comparison and the delete are atomic. Returns True if deleted.
        """
        raise NotImplementedError

    @abstractmethod
    async def set_nx(self, key: str, value: Any, *, ttl: int) -> bool | CacheStatus:
        """Set only when absent. True if this call created the key."""
        raise NotImplementedError

    @abstractmethod
    async def mget(self, keys: Sequence[str]) -> list[Any] | CacheStatus:
        """Batch ``get``; missing keys map to ``None``."""
        raise NotImplementedError

    @abstractmethod
    async def mset(self, mapping: Mapping[str, Any], *, ttl: int | None = None) -> bool:
        """Batch ``set``; every key gets the same TTL."""
        raise NotImplementedError

    @abstractmethod
    async def ping(self) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        """Release the underlying connection pool, if any."""
        return None


class NoOpCache(AbstractCache):
    """Cache used when no backend is configured.

    Reads miss, writes succeed without storing anything and ``incr`` returns 0,
    which callers treat as "no counter available".
    """

    @property
    def enabled(self) -> bool:
        return False

    async def get(self, key: str) -> Any:
        return None

    async def set(self, key: str, value: Any, *, ttl: int | None = None) -> bool:
        return True

    async def incr(self, key: str, amount: int = 1, *, ttl: int | None = None) -> int:
        return 0

    async def decr(self, key: str, amount: int = 1) -> int:
        return 0

    async def expire(self, key: str, ttl: int) -> bool:
        return True

    async def ttl(self, key: str) -> int:
        return -2

    async def exists(self, key: str) -> bool:
        return False

    async def delete(self, *keys: str) -> int:
        return 0

    async def delete_if_unchanged(self, expected: Mapping[str, Any]) -> bool:
        return False

    async def set_nx(self, key: str, value: Any, *, ttl: int) -> bool:
        return True

    async def mget(self, keys: Sequence[str]) -> list[Any]:
        return [None for _ in keys]

    async def mset(self, mapping: Mapping[str, Any], *, ttl: int | None = None) -> bool:
        return True

    async def ping(self) -> bool:
        return False
