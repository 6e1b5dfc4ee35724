"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

import aiosqlite
from fastapi import FastAPI

from app.config import get_settings
from app.database import shutdown_db, startup_db
from app.logging_setup import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    setup_logging()
    settings = get_settings()
    logger.info("Model Asset Identify v0.1.0 on http://%s:%s", settings.host, settings.port)

    cache_ready = False
    if settings.fingerprint_cache_enabled:
        try:
            await startup_db(settings)
            cache_ready = True
            logger.info("Fingerprint cache at %s", settings.get_db_path())
        except (OSError, aiosqlite.Error) as exc:
            logger.warning("Fingerprint cache disabled for this run: %s", exc)

    yield

    # Shutdown
    if cache_ready:
        await shutdown_db(settings)
    logger.info("Shutting down...")


app = FastAPI(
    title="Model Asset Identify",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/api/health")
async def health():
    return {"status": "ok"}


# ============================================================================
# API Routes (imported from routers)
# ============================================================================

from app.routers import assets as assets_router

app.include_router(assets_router.router, prefix="/api/assets", tags=["assets"])


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("app.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
