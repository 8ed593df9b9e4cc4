"""Per-IP usage limiting.

Each IP gets ``max_usage`` privileged operations per rolling window that
starts at its first counted use. State lives in the cache as a counter plus
a window document (see ``CacheKeys``); the durable store, when configured,
mirrors every change and takes over while the cache is unavailable.

Correctness per key comes from the atomic ``INCR`` and the overshoot check
that follows it: a caller whose increment pushed the counter past the limit
immediately gives the unit back, so the stored count never stays above
``max_usage`` and at most ``max_usage`` callers per window succeed. The
per-IP lock only narrows the race window; it never blocks.

Every public method returns a tagged result instead of raising.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

from app.adapters.cache import (
    CACHE_UNAVAILABLE,
    IP_LOCK_TTL,
    USAGE_STATS_TTL,
    AbstractCache,
    CacheKeys,
    is_unavailable,
)
from app.adapters.usage_store import AbstractUsageStore
from app.core.errors import DurableStoreError
from app.schemas.usage import (
    UsageCheckResult,
    UsageHealth,
    UsageIncrementResult,
    UsageLimitError,
    UsageLimitErrorCode,
    UsageRecord,
    UsageResetResult,
    UsageRollbackResult,
    UsageStatistics,
    epoch_to_datetime,
)
from app.utils.ip_utils import hash_ip_address

logger = logging.getLogger(__name__)

NO_USAGE_TO_ROLLBACK = "No usage to rollback"

_RESTART_ATTEMPTS = 3


class UsageLimitService:
    """Quota checks, increments, rollbacks and admin operations per IP."""

    def __init__(
        self,
        cache: AbstractCache,
        store: AbstractUsageStore | None = None,
        *,
        max_usage: int = 3,
        window_seconds: int = 24 * 3600,
        lock_ttl: int = IP_LOCK_TTL,
        enable_concurrency_control: bool = True,
        stats_ttl: int = USAGE_STATS_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_usage < 1:
            raise ValueError("max_usage must be >= 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

        self._cache = cache
        self._store = store
        self._max_usage = max_usage
        self._window = window_seconds
        self._lock_ttl = lock_ttl
        self._concurrency_control = enable_concurrency_control
        self._stats_ttl = stats_ttl
        self._clock = clock

    @property
    def max_usage(self) -> int:
        return self._max_usage

    @property
    def window_seconds(self) -> int:
        return self._window

    # -- quota check ---------------------------------------------------------

    async def check_quota(self, ip: str) -> UsageCheckResult:
        """Report whether ``ip`` may perform another operation. Never mutates.

        Falls back to the store when the cache is unavailable or disabled,
        and fails open (``degraded=True``) when there is no store either.
        """
        now = self._clock()
        try:
            record = await self._read_cache_record(ip, now)
            from_cache = True
            if is_unavailable(record):
                from_cache = False
                if self._store is None:
                    logger.warning(
                        "usage.check.degraded",
                        extra={"ip_hash": hash_ip_address(ip), "reason": "no_backend"},
                    )
                    return self._check_result(0, now + self._window, degraded=True)
                record = await self._store.get(ip)
        except DurableStoreError as exc:
            logger.error("usage.check.store_failed", extra={"ip_hash": hash_ip_address(ip)})
            return self._check_result(
                0,
                now + self._window,
                can_use=False,
                error=UsageLimitError.of(UsageLimitErrorCode.DATABASE_ERROR, exc.message),
            )
        except Exception:
            logger.exception("usage.check.failed", extra={"ip_hash": hash_ip_address(ip)})
            return self._check_result(
                0,
                now + self._window,
                can_use=False,
                error=UsageLimitError.of(
                    UsageLimitErrorCode.INTERNAL_ERROR, "Failed to check usage limit"
                ),
            )

        if record is None or record.is_expired(now):
            return self._check_result(0, now + self._window, is_from_cache=from_cache)
        return self._check_result(record.count, record.reset_at, is_from_cache=from_cache)

    def _check_result(
        self,
        count: int,
        reset_at: float,
        *,
        can_use: bool | None = None,
        is_from_cache: bool = False,
        degraded: bool = False,
        error: UsageLimitError | None = None,
    ) -> UsageCheckResult:
        count = min(count, self._max_usage)
        return UsageCheckResult(
            can_use=count < self._max_usage if can_use is None else can_use,
            usage_count=count,
            remaining_count=max(0, self._max_usage - count),
            max_usage=self._max_usage,
            reset_time=epoch_to_datetime(reset_at),
            is_from_cache=is_from_cache,
            degraded=degraded,
            error=error,
        )

    # -- increment -------------------------------------------------------------

    async def increment_usage(self, ip: str) -> UsageIncrementResult:
        """Consume one unit of quota for ``ip``.

        The limit is re-checked here; a previous ``check_quota`` result is
        never trusted.
        """
        now = self._clock()
        try:
            return await self._increment(ip, now)
        except Exception:
            logger.exception("usage.increment.failed", extra={"ip_hash": hash_ip_address(ip)})
            return UsageIncrementResult(
                success=False,
                usage_count=0,
                remaining_count=0,
                error=UsageLimitError.of(
                    UsageLimitErrorCode.INTERNAL_ERROR, "Failed to increment usage"
                ),
            )

    async def _increment(self, ip: str, now: float) -> UsageIncrementResult:
        count_key, window_key = CacheKeys.for_ip(ip)

        observed = await self._read_cache_values(ip)
        record = (
            CACHE_UNAVAILABLE
            if is_unavailable(observed)
            else await self._to_record(ip, *observed, now)
        )
        if record is not None and not is_unavailable(record) and record.is_expired(now):
            record = await self._restart_window(ip, observed, now)
        if is_unavailable(record):
            return await self._increment_in_store(ip, now)

        if record is not None and record.count >= self._max_usage:
            return self._exceeded(ip, record.count, record.reset_at)

        lock_token = await self._acquire_lock(ip)
        try:
            value = await self._cache.incr(count_key, ttl=self._window)
            if is_unavailable(value):
                return await self._increment_in_store(ip, now)

            if value > self._max_usage:
                await self._cache.decr(count_key)
                reset_at = await self._window_reset_at(ip, record, now)
                logger.warning(
                    "usage.increment.overshoot",
                    extra={"ip_hash": hash_ip_address(ip), "observed": value},
                )
                return self._exceeded(ip, self._max_usage, reset_at)

            if value == 1:
                window_doc = {"window_start": now, "reset_at": now + self._window}
                created = await self._cache.set_nx(window_key, window_doc, ttl=self._window)
                reset_at = now + self._window
                if created is not True:
                    reset_at = await self._window_reset_at(ip, None, now)
            else:
                reset_at = await self._window_reset_at(ip, record, now)
        finally:
            if lock_token is not None:
                await self._release_lock(ip, lock_token)

        await self._mirror_increment(ip, now)
        logger.info(
            "usage.increment.ok",
            extra={
                "ip_hash": hash_ip_address(ip),
                "usage_count": value,
                "max_usage": self._max_usage,
            },
        )
        return UsageIncrementResult(
            success=True,
            usage_count=value,
            remaining_count=max(0, self._max_usage - value),
            reset_time=epoch_to_datetime(reset_at),
        )

    async def _increment_in_store(self, ip: str, now: float) -> UsageIncrementResult:
        if self._store is None:
            logger.warning(
                "usage.increment.degraded",
                extra={"ip_hash": hash_ip_address(ip), "reason": "no_backend"},
            )
            return UsageIncrementResult(
                success=True,
                usage_count=0,
                remaining_count=self._max_usage,
                reset_time=epoch_to_datetime(now + self._window),
                degraded=True,
            )

        try:
            record = await self._store.increment(
                ip, max_usage=self._max_usage, window_seconds=self._window, now=now
            )
            if record is None:
                existing = await self._store.get(ip)
                reset_at = existing.reset_at if existing else now + self._window
                return self._exceeded(ip, self._max_usage, reset_at)
        except DurableStoreError as exc:
            return UsageIncrementResult(
                success=False,
                usage_count=0,
                remaining_count=0,
                error=UsageLimitError.of(UsageLimitErrorCode.DATABASE_ERROR, exc.message),
            )

        logger.info(
            "usage.increment.ok",
            extra={
                "ip_hash": hash_ip_address(ip),
                "usage_count": record.count,
                "max_usage": self._max_usage,
                "backend": "store",
            },
        )
        return UsageIncrementResult(
            success=True,
            usage_count=record.count,
            remaining_count=max(0, self._max_usage - record.count),
            reset_time=record.reset_time,
        )

    def _exceeded(self, ip: str, count: int, reset_at: float) -> UsageIncrementResult:
        reset_time = epoch_to_datetime(reset_at)
        logger.warning(
            "usage.increment.exceeded",
            extra={
                "ip_hash": hash_ip_address(ip),
                "usage_count": count,
                "max_usage": self._max_usage,
            },
        )
        return UsageIncrementResult(
            success=False,
            usage_count=min(count, self._max_usage),
            remaining_count=0,
            reset_time=reset_time,
            error=UsageLimitError.of(
                UsageLimitErrorCode.USAGE_LIMIT_EXCEEDED,
                "Usage limit exceeded",
                details={
                    "usage_count": min(count, self._max_usage),
                    "max_usage": self._max_usage,
                    "reset_time": reset_time.isoformat(),
                },
            ),
        )

    # -- rollback / reset ----------------------------------------------------

    async def rollback_usage(self, ip: str) -> UsageRollbackResult:
        """Give back one unit after the gated operation failed. Floors at 0."""
        now = self._clock()
        count_key = CacheKeys.usage_count(ip)

        current = await self._cache.get(count_key) if self._cache.enabled else CACHE_UNAVAILABLE
        if is_unavailable(current):
            return await self._rollback_in_store(ip, now)

        if current is None or int(current) <= 0:
            return self._rolled_back(0, NO_USAGE_TO_ROLLBACK)

        value = await self._cache.decr(count_key)
        if is_unavailable(value):
            return await self._rollback_in_store(ip, now)
        if value < 0:
            await self._cache.incr(count_key, -value)
            value = 0

        await self._mirror_decrement(ip, now)
        logger.info(
            "usage.rollback.ok",
            extra={"ip_hash": hash_ip_address(ip), "usage_count": value},
        )
        return self._rolled_back(value, "Usage rolled back")

    async def _rollback_in_store(self, ip: str, now: float) -> UsageRollbackResult:
        if self._store is None:
            return self._rolled_back(0, NO_USAGE_TO_ROLLBACK)
        try:
            before = await self._store.get(ip)
            if before is None or before.count <= 0 or before.is_expired(now):
                return self._rolled_back(0, NO_USAGE_TO_ROLLBACK)
            record = await self._store.decrement(ip, now=now)
        except DurableStoreError as exc:
            return UsageRollbackResult(
                success=False,
                usage_count=0,
                remaining_count=0,
                error=UsageLimitError.of(UsageLimitErrorCode.DATABASE_ERROR, exc.message),
            )
        count = record.count if record else 0
        return self._rolled_back(count, "Usage rolled back")

    def _rolled_back(self, count: int, message: str) -> UsageRollbackResult:
        return UsageRollbackResult(
            success=True,
            usage_count=count,
            remaining_count=max(0, self._max_usage - count),
            message=message,
        )

    async def reset_usage(self, ip: str) -> UsageResetResult:
        """Forget all usage of ``ip`` in the cache and the store."""
        cache_ok = True
        if self._cache.enabled:
            deleted = await self._cache.delete(*CacheKeys.for_ip(ip), CacheKeys.ip_lock(ip))
            cache_ok = not is_unavailable(deleted)

        if self._store is not None:
            try:
                await self._store.delete(ip)
            except DurableStoreError as exc:
                return UsageResetResult(
                    success=False,
                    error=UsageLimitError.of(UsageLimitErrorCode.DATABASE_ERROR, exc.message),
                )
        elif not cache_ok:
            return UsageResetResult(
                success=False,
                error=UsageLimitError.of(UsageLimitErrorCode.CACHE_ERROR, "Cache unavailable"),
            )

        logger.info("usage.reset", extra={"ip_hash": hash_ip_address(ip)})
        return UsageResetResult(success=True)

    # -- reads / maintenance ---------------------------------------------------

    async def get_usage_record(self, ip: str) -> UsageRecord | None:
        """Current record for ``ip`` (possibly expired) or None."""
        record = await self._read_cache_record(ip, self._clock())
        if not is_unavailable(record):
            return record
        if self._store is None:
            return None
        try:
            return await self._store.get(ip)
        except DurableStoreError:
            return None

    async def cleanup_expired_records(self) -> int:
        """Delete store rows whose window has ended. Cache keys expire by TTL."""
        if self._store is None:
            return 0
        try:
            removed = await self._store.cleanup_expired(now=self._clock())
        except DurableStoreError:
            return 0
        logger.info("usage.cleanup", extra={"removed": removed})
        return removed

    async def get_usage_statistics(self) -> UsageStatistics | None:
        """Aggregates from the store, cached for ``stats_ttl`` seconds."""
        stats_key = CacheKeys.usage_stats()
        cached = await self._cache.get(stats_key)
        if isinstance(cached, dict):
            return UsageStatistics.model_validate(cached)

        if self._store is None:
            return None
        try:
            stats = await self._store.statistics(max_usage=self._max_usage, now=self._clock())
        except DurableStoreError:
            return None
        await self._cache.set(stats_key, stats.model_dump(), ttl=self._stats_ttl)
        return stats

    async def health_check(self) -> UsageHealth:
        cache_healthy = await self._cache.ping() if self._cache.enabled else False
        store_healthy = await self._store.ping() if self._store is not None else False

        problems = []
        if self._cache.enabled and not cache_healthy:
            problems.append("cache unreachable")
        if self._store is not None and not store_healthy:
            problems.append("store unreachable")

        return UsageHealth(
            healthy=not problems,
            cache_enabled=self._cache.enabled,
            cache_healthy=cache_healthy,
            store_configured=self._store is not None,
            store_healthy=store_healthy,
            error="; ".join(problems) or None,
        )

    # -- internals ---------------------------------------------------------------

    async def _read_cache_values(self, ip: str) -> Any:
        """Raw counter and window document in one round trip, or CACHE_UNAVAILABLE."""
        if not self._cache.enabled:
            return CACHE_UNAVAILABLE
        values = await self._cache.mget(list(CacheKeys.for_ip(ip)))
        if is_unavailable(values):
            return CACHE_UNAVAILABLE
        raw_count, window = values
        return raw_count, window

    async def _read_cache_record(self, ip: str, now: float) -> Any:
        """Decoded usage record for ``ip``.

        Returns:
            UsageRecord, None when the IP has no counter, or CACHE_UNAVAILABLE
            (also when the cache is disabled).
        """
        values = await self._read_cache_values(ip)
        if is_unavailable(values):
            return CACHE_UNAVAILABLE
        return await self._to_record(ip, *values, now)

    async def _to_record(self, ip: str, raw_count: Any, window: Any, now: float) -> Any:
        if raw_count is None:
            return None

        if isinstance(window, dict) and "reset_at" in window:
            reset_at = float(window["reset_at"])
            window_start = float(window.get("window_start", reset_at - self._window))
        else:
            # The counter outlives its window document only briefly (first
            # increment in flight) or after a partial failure; its TTL is authoritative.
            reset_at = await self._counter_reset_at(ip, now)
            if is_unavailable(reset_at):
                return CACHE_UNAVAILABLE
            window_start = reset_at - self._window

        return UsageRecord(
            ip_address=ip,
            count=max(0, int(raw_count)),
            window_start=window_start,
            reset_at=reset_at,
        )

    async def _counter_reset_at(self, ip: str, now: float) -> Any:
        """End of the window according to the counter's TTL.

        A counter without a TTL belongs to no live window, so it ends now.
        """
        remaining = await self._cache.ttl(CacheKeys.usage_count(ip))
        if is_unavailable(remaining):
            return CACHE_UNAVAILABLE
        if remaining <= 0:
            return now
        return now + remaining

    async def _restart_window(self, ip: str, observed: tuple[Any, Any], now: float) -> Any:
        """Clear an ended window, unless a concurrent caller already did.

        The delete only lands while the keys still hold what this caller saw,
        so a counter already restarted by someone else is never wiped.
        """
        count_key, window_key = CacheKeys.for_ip(ip)
        for _ in range(_RESTART_ATTEMPTS):
            raw_count, window = observed
            deleted = await self._cache.delete_if_unchanged(
                {count_key: raw_count, window_key: window}
            )
            if is_unavailable(deleted):
                return CACHE_UNAVAILABLE
            if deleted:
                logger.info("usage.window.restarted", extra={"ip_hash": hash_ip_address(ip)})
                return None

            observed = await self._read_cache_values(ip)
            if is_unavailable(observed):
                return CACHE_UNAVAILABLE
            record = await self._to_record(ip, *observed, now)
            if record is None or is_unavailable(record) or not record.is_expired(now):
                return record

        # Still stale after repeated contention; the overshoot check bounds the count
        logger.warning("usage.window.restart_contended", extra={"ip_hash": hash_ip_address(ip)})
        return None

    async def _window_reset_at(self, ip: str, record: UsageRecord | None, now: float) -> float:
        if record is not None:
            return record.reset_at
        window = await self._cache.get(CacheKeys.usage_window(ip))
        if isinstance(window, dict) and float(window.get("reset_at", 0)) > now:
            return float(window["reset_at"])
        reset_at = await self._counter_reset_at(ip, now)
        if is_unavailable(reset_at) or reset_at <= now:
            return now + self._window
        return reset_at

    async def _acquire_lock(self, ip: str) -> str | None:
        if not self._concurrency_control:
            return None
        token = uuid.uuid4().hex
        acquired = await self._cache.set_nx(CacheKeys.ip_lock(ip), token, ttl=self._lock_ttl)
        if acquired is True:
            return token
        logger.debug("usage.lock.contended", extra={"ip_hash": hash_ip_address(ip)})
        return None

    async def _release_lock(self, ip: str, token: str) -> None:
        lock_key = CacheKeys.ip_lock(ip)
        if await self._cache.get(lock_key) == token:
            await self._cache.delete(lock_key)

    async def _mirror_increment(self, ip: str, now: float) -> None:
        if self._store is None:
            return
        try:
            await self._store.increment(
                ip, max_usage=self._max_usage, window_seconds=self._window, now=now
            )
        except DurableStoreError:
            logger.warning("usage.mirror.failed", extra={"op": "increment"})

    async def _mirror_decrement(self, ip: str, now: float) -> None:
        if self._store is None:
            return
        try:
            await self._store.decrement(ip, now=now)
        except DurableStoreError:
            logger.warning("usage.mirror.failed", extra={"op": "decrement"})
