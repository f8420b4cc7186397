from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from phoneops.core.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health(request: Request) -> dict[str, object]:
    settings = get_settings()
    controller = request.app.state.controller
    broadcaster = request.app.state.broadcaster
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "active_workers": controller.active_count(),
        "subscribers": broadcaster.subscriber_count(),
        "timestamp": datetime.now(tz=timezone.utc),
    }
