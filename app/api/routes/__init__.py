from __future__ import annotations

from app.api.routes.health import router as health_router
from app.api.routes.prompts import router as prompts_router
from app.api.routes.usage import router as usage_router

__all__ = ["health_router", "prompts_router", "usage_router"]
