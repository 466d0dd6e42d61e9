"""Health check endpoint, public."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.config import get_settings
from src.services.database import ping

router = APIRouter(tags=["system"])
logger = logging.getLogger("exercise_sync.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness check. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check and reports the gateway
    queue when the remote client has been used.
    """
    settings = get_settings()
    db_ok = False
    try:
        db_ok = await ping()
    except Exception as exc:
        logger.warning("Health check DB ping failed: %s", exc)

    gateway = getattr(request.app.state, "gateway", None)
    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "remote_configured": bool(
            settings.trainerize_group_id and settings.trainerize_api_token
        ),
        "gateway": gateway.stats() if gateway is not None else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
