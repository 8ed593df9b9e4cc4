from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from app.core.auth import verify_admin_key
from app.core.config import settings
from app.core.errors import DurableStoreError, ValidationAppError
from app.core.usage_limit import get_usage_limit_service, resolve_request_ip
from app.schemas.usage import UsageStatistics
from app.services.usage_limit_service import UsageLimitService
from app.utils.ip_utils import IPAddressInfo, hash_ip_address, normalize_ip_address

router = APIRouter(prefix="/usage-limit", tags=["Usage Limit"])


@router.get("/check")
async def check_usage_limit(
    ip: IPAddressInfo = Depends(resolve_request_ip),
    service: UsageLimitService = Depends(get_usage_limit_service),
) -> dict[str, Any]:
    """Report the caller's remaining quota without consuming any.

    When the limiter cannot decide, defaults are returned and ``canUse``
    follows the fail-open policy.
    """
    result = await service.check_quota(ip.limit_key)

    if result.error is not None:
        result = result.model_copy(
            update={
                "can_use": settings.usage.fail_open,
                "usage_count": 0,
                "remaining_count": service.max_usage,
            }
        )

    payload = result.model_dump(mode="json", by_alias=True, exclude_none=True)
    payload["maxUsageCount"] = service.max_usage
    payload["ipType"] = ip.family.value
    if not settings.is_production:
        payload["ipAddress"] = ip.normalized
    return payload


def _target_key(ip: str | None, caller: IPAddressInfo) -> str:
    if ip is None:
        return caller.limit_key
    info = normalize_ip_address(
        ip,
        allow_localhost=True,
        map_ipv6_to_ipv4=settings.ip.map_ipv6_to_ipv4,
        source="query",
    )
    if not info.is_valid:
        raise ValidationAppError(
            code="INVALID_IP_ADDRESS",
            message="The ip parameter is not a valid IPv4 or IPv6 address.",
        )
    return info.normalized


@router.post("/reset", dependencies=[Depends(verify_admin_key)])
async def reset_usage_limit(
    ip: str | None = Query(None, description="Address to reset; defaults to the caller."),
    caller: IPAddressInfo = Depends(resolve_request_ip),
    service: UsageLimitService = Depends(get_usage_limit_service),
) -> dict[str, Any]:
    """Forget all recorded usage of an IP (admin)."""
    key = _target_key(ip, caller)
    result = await service.reset_usage(key)
    if not result.success:
        raise DurableStoreError(
            code=result.error.code.value if result.error else "INTERNAL_ERROR",
            message="Failed to reset usage limit",
        )
    return {"success": True, "ipHash": hash_ip_address(key)}


@router.get(
    "/stats",
    response_model=UsageStatistics,
    dependencies=[Depends(verify_admin_key)],
)
async def usage_statistics(
    service: UsageLimitService = Depends(get_usage_limit_service),
) -> UsageStatistics:
    """Aggregated usage over all tracked IPs (admin)."""
    stats = await service.get_usage_statistics()
    if stats is None:
        raise DurableStoreError(
            code="statistics_unavailable",
            message="Usage statistics require a reachable usage store",
            details={"hint": "Set USAGE_STORE_URL"},
        )
    return stats


@router.post("/cleanup", dependencies=[Depends(verify_admin_key)])
async def cleanup_usage_records(
    service: UsageLimitService = Depends(get_usage_limit_service),
) -> dict[str, int]:
    """Delete stored records whose window has ended (admin)."""
    return {"removed": await service.cleanup_expired_records()}
