"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers and
resource lifecycle) so tests can build isolated instances.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api.routes import health_router, prompts_router, usage_router
from app.core.config import settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.core.openapi import apply_openapi_customizations
from app.core.usage_limit import close_usage_limit_resources
from app.utils.ip_utils import header_extractor_names

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "app.startup",
        extra={
            "app_env": settings.app_env,
            "max_usage": settings.usage.max_usage,
            "reset_period_hours": settings.usage.reset_period_hours,
            "cache_configured": bool(settings.cache.url),
            "store_configured": bool(settings.usage.store_url),
            "trusted_ip_headers": list(header_extractor_names()) if settings.ip.trust_proxy else [],
        },
    )
    yield
    await close_usage_limit_resources()
    logger.info("app.shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Prompt Demo API",
        description=(
            "Public demo backend for AI prompt tools. Anonymous visitors get a "
            "small number of generation calls per IP per rolling window; the "
            "quota can be inspected, and administrators can reset it and read "
            "usage statistics."
        ),
        version="0.1.0",
        debug=settings.app.debug,
        lifespan=lifespan,
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
    )

    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(usage_router, prefix="/v1")
    app.include_router(prompts_router, prefix="/v1")
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
