"""Durable usage store interface.

The store backs the usage limiter when the cache is unavailable and is the
source of truth for cleanup and statistics. Implementations raise
``DurableStoreError`` on any backend failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from app.schemas.usage import UsageRecord, UsageStatistics


class AbstractUsageStore(ABC):
    """Interface for per-IP usage records."""

    @abstractmethod
    async def get(self, ip: str) -> UsageRecord | None:
        """Return the stored record (expired or not) or None."""
        raise NotImplementedError

    @abstractmethod
    async def increment(
        self,
        ip: str,
        *,
        max_usage: int,
        window_seconds: int,
        now: float,
    ) -> UsageRecord | None:
        """Conditionally consume one unit.

        An expired window is restarted at ``now`` with count 1. Otherwise the
        count goes up only while it is below ``max_usage``.

        Returns:
            The updated record, or None when the limit is already reached.
        """
        raise NotImplementedError

    @abstractmethod
    async def decrement(self, ip: str, *, now: float) -> UsageRecord | None:
        """Give back one unit, floored at 0. None if no record exists."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, ip: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def cleanup_expired(self, *, now: float) -> int:
        """Delete records whose window ended; returns how many were removed."""
        raise NotImplementedError

    @abstractmethod
    async def statistics(self, *, max_usage: int, now: float) -> UsageStatistics:
        raise NotImplementedError

    @abstractmethod
    async def ping(self) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None
