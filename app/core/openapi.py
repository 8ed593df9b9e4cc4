"""OpenAPI metadata and customization utilities.

Adds the admin key security scheme (``X-Admin-Key``) to the generated schema
and applies it only to admin operations; everything else stays anonymous.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

ADMIN_PATHS = (
    "/v1/usage-limit/reset",
    "/v1/usage-limit/stats",
    "/v1/usage-limit/cleanup",
)


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add tags and admin security."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "AdminKeyAuth",
            {
                "type": "apiKey",
                "in": "header",
                "name": "X-Admin-Key",
                "description": "Admin key for reset and statistics endpoints.",
            },
        )

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {
                "name": "Usage Limit",
                "description": "Per-IP quota inspection and administration.",
            },
            {
                "name": "Prompts",
                "description": "Generation endpoints gated by the per-IP quota.",
            },
            {
                "name": "Health",
                "description": "Liveness and backend health.",
            },
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for path, methods in schema.get("paths", {}).items():
            if path not in ADMIN_PATHS:
                continue
            for method_obj in methods.values():
                if isinstance(method_obj, dict):
                    method_obj["security"] = [{"AdminKeyAuth": []}]

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
