"""
SlotOps API — read-only view over alerts, tier history and job runs.

The monitor and the reclassifier run as workers; this app only reads what
they recorded.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings
from core.logging import configure_logging
from db.session import get_engine

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging on startup, release the pool on shutdown."""
    configure_logging()
    logger.info("api.started", version=settings.app_version, env=settings.app_env)
    yield
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
    logger.info("api.stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Slot telemetry alerts and loyalty tier history",
    lifespan=lifespan,
)

# CORS (read-only surface)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["*"],
)

from api.v1.routers import alerts, jobs, players  # noqa: E402

app.include_router(alerts.router)
app.include_router(players.router)
app.include_router(jobs.router)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": settings.app_version, "env": settings.app_env}
