"""Pydantic schemas for usage-limit results.

Results serialize with camelCase aliases (``canUse``, ``resetTime``...) to
match what browser clients consume.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class UsageLimitErrorCode(str, Enum):
    """Machine-readable failure codes of the usage limiter."""

    USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"
    INVALID_IP_ADDRESS = "INVALID_IP_ADDRESS"
    DATABASE_ERROR = "DATABASE_ERROR"
    CACHE_ERROR = "CACHE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CONCURRENCY_ERROR = "CONCURRENCY_ERROR"


_RETRYABLE = {
    UsageLimitErrorCode.DATABASE_ERROR,
    UsageLimitErrorCode.CACHE_ERROR,
    UsageLimitErrorCode.CONCURRENCY_ERROR,
}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UsageLimitError(CamelModel):
    """Tagged failure carried inside a result."""

    code: UsageLimitErrorCode
    message: str
    details: dict[str, Any] | None = None
    retryable: bool = False

    @classmethod
    def of(
        cls,
        code: UsageLimitErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> "UsageLimitError":
        return cls(code=code, message=message, details=details, retryable=code in _RETRYABLE)


class UsageCheckResult(CamelModel):
    """Outcome of a read-only quota check."""

    can_use: bool
    usage_count: int = Field(..., ge=0)
    remaining_count: int = Field(..., ge=0)
    max_usage: int = Field(..., ge=1)
    reset_time: datetime
    is_from_cache: bool = False
    degraded: bool = Field(
        False,
        description="True when the decision was made without a working backend.",
    )
    error: UsageLimitError | None = None


class UsageIncrementResult(CamelModel):
    """Outcome of consuming one unit of quota."""

    success: bool
    usage_count: int = Field(..., ge=0)
    remaining_count: int = Field(..., ge=0)
    reset_time: datetime | None = None
    degraded: bool = False
    error: UsageLimitError | None = None


class UsageRollbackResult(CamelModel):
    """Outcome of returning one unit of quota."""

    success: bool
    usage_count: int = Field(..., ge=0)
    remaining_count: int = Field(..., ge=0)
    message: str | None = None
    error: UsageLimitError | None = None


class UsageResetResult(CamelModel):
    success: bool
    error: UsageLimitError | None = None


class UsageStatistics(CamelModel):
    """Aggregates over all tracked IPs."""

    total_users: int = 0
    active_users: int = 0
    limit_reached_users: int = 0
    average_usage: float = 0.0
    max_usage_reached: int = 0


class UsageHealth(CamelModel):
    healthy: bool
    cache_enabled: bool
    cache_healthy: bool
    store_configured: bool
    store_healthy: bool
    error: str | None = None


@dataclass(frozen=True)
class UsageRecord:
    """Per-IP usage within one window (epoch seconds)."""

    ip_address: str
    count: int
    window_start: float
    reset_at: float
    last_used_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return now >= self.reset_at

    @property
    def reset_time(self) -> datetime:
        return epoch_to_datetime(self.reset_at)


def epoch_to_datetime(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)
