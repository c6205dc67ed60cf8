"""Health check routes."""

from typing import Any

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def readiness_check(request: Request) -> dict[str, Any]:
    """Readiness plus a count of live conversations and web clients."""
    registry = request.app.state.registry
    hub = request.app.state.hub
    return {
        "status": "ready",
        "conversations": len(registry),
        "clients": len(hub),
    }
