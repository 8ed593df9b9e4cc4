"""Admin key authentication.

Public endpoints (quota check, gated generation) are anonymous and limited
per IP. Administrative endpoints (reset, statistics) require one of the keys
listed in ``APP_ADMIN_API_KEYS`` in the ``X-Admin-Key`` header.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Annotated

from fastapi import Header

from app.core.config import settings
from app.core.errors import AuthenticationAppError

logger = logging.getLogger(__name__)


def parse_api_keys(keys_string: str | None) -> set[str]:
    """Parse comma-separated API keys into a set.

    Examples:
        >>> parse_api_keys("key1, key2 , key3 ")
        {'key1', 'key2', 'key3'}
        >>> parse_api_keys(None)
        set()
    """
    if not keys_string:
        return set()
    return {key.strip() for key in keys_string.split(",") if key.strip()}


def _key_hash(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()[:16]


def validate_admin_key(provided_key: str | None) -> None:
    """Check ``provided_key`` against the configured admin keys.

    Raises:
        AuthenticationAppError: If no keys are configured, or the key is
            missing or unknown.
    """
    valid_keys = parse_api_keys(settings.app.admin_api_keys)

    if not valid_keys:
        logger.error("auth.failed", extra={"reason": "admin_keys_not_configured"})
        raise AuthenticationAppError(
            code="admin_keys_not_configured",
            message="Admin endpoints are disabled: no admin keys are configured",
            details={"hint": "Set APP_ADMIN_API_KEYS to enable admin endpoints"},
        )

    if not provided_key:
        logger.warning("auth.failed", extra={"reason": "missing_admin_key"})
        raise AuthenticationAppError(
            code="missing_admin_key",
            message="Missing admin key. Provide X-Admin-Key header.",
        )

    if not any(hmac.compare_digest(provided_key, key) for key in valid_keys):
        logger.warning(
            "auth.failed",
            extra={"reason": "invalid_admin_key", "key_hash": _key_hash(provided_key)},
        )
        raise AuthenticationAppError(
            code="invalid_admin_key",
            message="Invalid admin key",
        )


async def verify_admin_key(
    x_admin_key: Annotated[str | None, Header(alias="X-Admin-Key")] = None,
) -> None:
    """FastAPI dependency guarding admin endpoints.

    Usage:
        @router.post("/usage-limit/reset", dependencies=[Depends(verify_admin_key)])

    Raises:
        AuthenticationAppError: Rendered as 403 by the exception handlers.
    """
    validate_admin_key(x_admin_key)
    logger.info("auth.success", extra={"key_hash": _key_hash(x_admin_key or "")})
