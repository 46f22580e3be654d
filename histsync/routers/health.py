"""Health check endpoint."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from histsync.dependencies import AppSettings

router = APIRouter(tags=["system"])
logger = logging.getLogger("histsync.health")


@router.get("/health")
async def health_check(request: Request, settings: AppSettings) -> dict:
    """Liveness probe. Reports whether the sync manager loop is running."""
    manager = getattr(request.app.state, "sync_manager", None)
    running = manager is not None and manager.running
    if not running:
        logger.warning("Health check: sync manager not running")

    return {
        "status": "healthy" if running else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "sync_manager": "running" if running else "stopped",
        "active_jobs": len(manager.active_jobs) if manager is not None else 0,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
