"""OpenAPI customization for rate limited endpoints.

Documents the rate limit contract in the generated schema:
- a ``RateLimitError`` component for the 429 body
- a 429 response with ``Retry-After`` / ``X-RateLimit-*`` headers on every
  operation that is not exempt from the limiter
- tags metadata
"""

from __future__ import annotations

from typing import Any, Dict, Iterable

from fastapi import FastAPI

_RATE_LIMIT_HEADERS = {
    "Retry-After": {
        "description": "Seconds to wait before retrying.",
        "schema": {"type": "integer"},
    },
    "X-RateLimit-Limit": {
        "description": "Ceiling for the current window.",
        "schema": {"type": "integer"},
    },
    "X-RateLimit-Remaining": {
        "description": "Budget left in the current window.",
        "schema": {"type": "integer"},
    },
    "X-RateLimit-Reset": {
        "description": "UNIX epoch seconds when the budget next increases.",
        "schema": {"type": "integer"},
    },
}


def apply_openapi_customizations(app: FastAPI, *, exempt_paths: Iterable[str] = ()) -> None:
    """Patch FastAPI's OpenAPI generation to document rate limiting.

    Args:
        app: Application to patch.
        exempt_paths: Path prefixes that bypass the limiter (no 429 documented).
    """

    original_openapi = app.openapi
    exempt = tuple(exempt_paths)

    def custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema
        schema = original_openapi()

        components = schema.setdefault("components", {})
        schemas = components.setdefault("schemas", {})
        schemas.setdefault(
            "RateLimitError",
            {
                "type": "object",
                "required": ["error", "retryAfter"],
                "properties": {
                    "error": {"type": "string", "example": "Too many requests"},
                    "retryAfter": {"type": "integer", "example": 30},
                },
            },
        )

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {
                "name": "Rate limit",
                "description": "Inspect the caller's current rate limit budget.",
            },
            {
                "name": "Health",
                "description": "Liveness checks (never rate limited).",
            },
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for path, methods in schema.get("paths", {}).items():
            if exempt and path.startswith(exempt):
                continue
            for method_obj in methods.values():
                if not isinstance(method_obj, dict):
                    continue
                method_obj.setdefault("responses", {}).setdefault(
                    "429",
                    {
                        "description": "Too many requests",
                        "headers": _RATE_LIMIT_HEADERS,
                        "content": {
                            "application/json": {
                                "schema": {"$ref": "#/components/schemas/RateLimitError"}
                            }
                        },
                    },
                )

        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
