from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from app.core.usage_limit import get_usage_limit_service
from app.services.usage_limit_service import UsageLimitService

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(
    service: UsageLimitService = Depends(get_usage_limit_service),
) -> dict[str, Any]:
    """Liveness plus usage-limit backend health.

    The endpoint itself always answers 200 while the process is up; a
    degraded limiter is reported as ``"status": "degraded"``.
    """

    usage = await service.health_check()
    return {
        "status": "ok" if usage.healthy else "degraded",
        "usageLimit": usage.model_dump(by_alias=True),
    }
