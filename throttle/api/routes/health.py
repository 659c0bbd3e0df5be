from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Health check endpoint.

    Reports liveness and which counter backend the limiter uses. The path is
    exempt from rate limiting so load balancers are never throttled.

    Returns:
        dict: ``{"status": "ok", "store": "memory" | "redis"}``.
    """

    return {"status": "ok", "store": getattr(request.app.state, "store_backend", "unknown")}
