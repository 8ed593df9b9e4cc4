"""Usage-limit wiring for FastAPI routes.

This module owns the process-wide cache client, durable store and
``UsageLimitService`` (created lazily, closed on shutdown) and exposes the
request-side helpers the gated routes use:

- ``resolve_request_ip``: derive the limiter key from headers/peer address
- ``consume_quota``: check, then increment, raising 429 when exhausted
- ``usage_headers``: ``X-Usage-*`` response headers

When the limiter cannot decide (store errors, internal errors) the request
is allowed if ``USAGE_FAIL_OPEN`` is true and rejected with 503 otherwise.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time

from fastapi import Request

from app.adapters.cache import AbstractCache, create_cache
from app.adapters.usage_store import AbstractUsageStore, SQLAlchemyUsageStore
from app.core.config import settings
from app.core.errors import DurableStoreError, UsageLimitExceededError
from app.schemas.usage import (
    UsageCheckResult,
    UsageIncrementResult,
    UsageLimitErrorCode,
)
from app.services.usage_limit_service import UsageLimitService
from app.utils.ip_utils import (
    IPAddressInfo,
    IPExtractionOptions,
    extract_region_info,
    format_ip_for_log,
    hash_ip_address,
    resolve_client_ip,
)

logger = logging.getLogger(__name__)


_cache: AbstractCache | None = None
_store: AbstractUsageStore | None = None
_store_ready = False
_service: UsageLimitService | None = None
_init_lock = asyncio.Lock()


def get_cache() -> AbstractCache:
    """Return the process-wide cache, creating it on first use."""

    global _cache
    if _cache is None:
        _cache = create_cache(settings.cache)
    return _cache


async def get_usage_store() -> AbstractUsageStore | None:
    """Return the process-wide durable store, or None when not configured.

    The table is created on first use.
    """

    global _store, _store_ready
    if not settings.usage.store_url:
        return None
    if _store is None:
        _store = SQLAlchemyUsageStore.from_url(settings.usage.store_url)
    if not _store_ready:
        try:
            await _store.create_schema()
            _store_ready = True
        except DurableStoreError:
            logger.error("usage_store.unavailable_at_startup")
    return _store


async def get_usage_limit_service() -> UsageLimitService:
    """FastAPI dependency returning the shared ``UsageLimitService``."""

    global _service
    if _service is not None:
        return _service
    async with _init_lock:
        if _service is None:
            _service = UsageLimitService(
                get_cache(),
                await get_usage_store(),
                max_usage=settings.usage.max_usage,
                window_seconds=settings.usage.window_seconds,
                lock_ttl=settings.usage.lock_ttl_seconds,
                enable_concurrency_control=settings.usage.enable_concurrency_control,
                stats_ttl=settings.usage.stats_ttl_seconds,
            )
    return _service


async def close_usage_limit_resources() -> None:
    """Close the cache client and store engine (application shutdown)."""

    global _cache, _store, _store_ready, _service
    if _cache is not None:
        await _cache.close()
    if _store is not None:
        await _store.close()
    _cache, _store, _store_ready, _service = None, None, False, None


def resolve_request_ip(request: Request) -> IPAddressInfo:
    """FastAPI dependency deriving the caller's limiter address."""

    options = IPExtractionOptions(
        trust_proxy=settings.ip.trust_proxy,
        allow_localhost=settings.ip.allow_localhost,
        map_ipv6_to_ipv4=settings.ip.map_ipv6_to_ipv4,
        dev_fallback_ip=None if settings.is_production else settings.ip.dev_fallback_ip,
    )
    peer = request.client.host if request.client else None
    info = resolve_client_ip(request.headers, peer, options)
    if not info.is_valid:
        logger.warning(
            "ip.invalid",
            extra={
                "source": info.source,
                "family": info.family.value,
                "region": extract_region_info(request.headers),
            },
        )
    else:
        logger.debug("ip.resolved", extra={"client": format_ip_for_log(info)})
    return info


def _retry_after(result: UsageIncrementResult | UsageCheckResult) -> int:
    if result.reset_time is None:
        return 0
    return max(0, math.ceil(result.reset_time.timestamp() - time.time()))


def _exceeded(result: UsageIncrementResult | UsageCheckResult) -> UsageLimitExceededError:
    reset_time = result.reset_time.isoformat() if result.reset_time else ""
    return UsageLimitExceededError(
        code="USAGE_LIMIT_EXCEEDED",
        message="Usage limit exceeded. Try again after the reset time.",
        details={
            "usage_count": result.usage_count,
            "max_usage": settings.usage.max_usage,
            "reset_time": reset_time,
            "retry_after": _retry_after(result),
        },
    )


def _undecided(ip_hash: str, stage: str, code: str) -> None:
    """Apply the fail-open policy when the limiter could not decide."""

    if settings.usage.fail_open:
        logger.warning(
            "usage.fail_open",
            extra={"ip_hash": ip_hash, "stage": stage, "error_code": code},
        )
        return
    raise DurableStoreError(
        code=code,
        message="Usage limit service is temporarily unavailable",
        details={"hint": "Retry later"},
    )


async def consume_quota(service: UsageLimitService, ip: IPAddressInfo) -> UsageIncrementResult:
    """Check the quota of ``ip`` and consume one unit.

    Returns:
        The increment result (``degraded`` when nothing was counted).

    Raises:
        UsageLimitExceededError: The IP has no quota left in this window.
        DurableStoreError: The limiter cannot decide and fail-open is off.
    """

    key = ip.limit_key
    ip_hash = hash_ip_address(key)

    check = await service.check_quota(key)
    if check.error is not None:
        _undecided(ip_hash, "check", check.error.code.value)
    elif not check.can_use:
        raise _exceeded(check)

    result = await service.increment_usage(key)
    if result.success:
        return result

    if result.error is not None and result.error.code is UsageLimitErrorCode.USAGE_LIMIT_EXCEEDED:
        raise _exceeded(result)

    code = result.error.code.value if result.error else UsageLimitErrorCode.INTERNAL_ERROR.value
    _undecided(ip_hash, "increment", code)
    return UsageIncrementResult(
        success=True,
        usage_count=0,
        remaining_count=service.max_usage,
        reset_time=check.reset_time,
        degraded=True,
    )


def usage_headers(result: UsageIncrementResult, max_usage: int) -> dict[str, str]:
    """Response headers describing the caller's remaining quota."""

    headers = {
        "X-Usage-Limit": str(max_usage),
        "X-Usage-Count": str(result.usage_count),
        "X-Usage-Remaining": str(result.remaining_count),
    }
    if result.reset_time is not None:
        headers["X-Usage-Reset"] = result.reset_time.isoformat()
    return headers
