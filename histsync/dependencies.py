"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from histsync.config import Settings, get_settings
from histsync.sync.manager import SyncManager


async def get_sync_manager(request: Request) -> SyncManager:
    """Return the manager the lifespan hook stored on ``app.state``."""
    manager: SyncManager | None = getattr(request.app.state, "sync_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Sync manager not running")
    return manager


# Annotated shortcuts for route signatures
SyncManagerDep = Annotated[SyncManager, Depends(get_sync_manager)]
AppSettings = Annotated[Settings, Depends(get_settings)]
