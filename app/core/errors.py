"""Application-level exception types.

Adapters and routes raise these; ``exception_handlers`` turns each subclass
into a JSON error body with a matching HTTP status.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Quota errors carry the usage fields so clients can show when the
    window resets.
    """

    code: str
    message: str
    hint: str
    max_chars: int
    actual_value: int
    http_status: int
    retry_after: float
    reset_time: str
    usage_count: int
    max_usage: int
    model: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class LLMAppError(AppError):
    """Raised when the generative provider fails."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


class UsageLimitExceededError(AppError):
    """Raised by the HTTP layer when an IP has used up its quota."""


class DurableStoreError(AppError):
    """Raised by the usage store when the database cannot be reached or queried."""
