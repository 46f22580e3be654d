"""HistSync API: FastAPI application entry point.

Run locally:
    uvicorn histsync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from histsync.config import get_settings
from histsync.processing.stages import register_default_stages
from histsync.routers import athletes, exchange, health
from histsync.services.remote import RemoteClient
from histsync.services.state import JSONFileStateStorage
from histsync.services.store import Stores
from histsync.sync.config_loader import get_sync_config
from histsync.sync.manager import SyncManager
from histsync.sync.manifest import REMOTE, get_registry
from histsync.sync.ratelimit import build_rate_limiter_group
from histsync.workers.pool import WorkerPool

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("histsync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the engine on startup; tear it down in reverse on shutdown."""
    settings = get_settings()
    logger.info(
        "Starting HistSync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    config = get_sync_config()
    registry = get_registry()
    if not registry.get_stages(REMOTE):
        register_default_stages(registry, config)

    rate_limiters = build_rate_limiter_group(config.rate_limits, JSONFileStateStorage(settings.state_dir))
    await rate_limiters.load()
    client = RemoteClient(settings.remote_base_url, settings.remote_timeout_seconds)
    pool = WorkerPool(settings.worker_pool_size, idle_timeout=settings.worker_idle_timeout_seconds)
    manager = SyncManager(
        stores=Stores(),
        registry=registry,
        client=client,
        rate_limiters=rate_limiters,
        config=config,
        current_athlete=settings.current_athlete_id,
        pool=pool,
    )
    manager.start()
    app.state.sync_manager = manager
    yield
    manager.stop()
    await manager.join()
    await pool.shutdown()
    await client.aclose()
    app.state.sync_manager = None
    logger.info("HistSync API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="HistSync API",
        description="Incremental athlete activity sync engine with local stream processing.",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(athletes.router, prefix=v1_prefix)
    app.include_router(exchange.router, prefix=v1_prefix)

    return app


app = create_app()
