"""Exercise Sync API, FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import get_settings
from src.exercise_sync.config_loader import get_sync_config
from src.routers import health, sync, workouts
from src.services.database import close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("exercise_sync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting Exercise Sync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    # fail fast on a broken mapping table
    get_sync_config()
    await init_pool(settings)
    yield
    gateway = getattr(app.state, "gateway", None)
    if gateway is not None:
        await gateway.aclose()
    await close_pool()
    logger.info("Exercise Sync API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Exercise Sync API",
        description=(
            "Keeps the local exercise library in sync with the fitness platform: "
            "discovery, reconciliation previews, and rate-limited bulk writes."
        ),
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
    app.include_router(sync.router, prefix="/api/v1")
    app.include_router(workouts.router, prefix="/api/v1")

    return app


app = create_app()
