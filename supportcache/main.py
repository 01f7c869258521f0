"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from supportcache.api import cache, sync
from supportcache.config import settings
from supportcache.exceptions import SyncInProgressError
from supportcache.models.base import init_db
from supportcache.scheduler import scheduler
from supportcache.services.orchestrator import get_orchestrator
from supportcache.services.store import CacheStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _start_initial_sync():
    """Kick off a background full sync when the cache has never been filled."""
    if not settings.sync_on_startup_if_empty:
        return
    if not settings.zendesk_configured:
        logger.warning("Zendesk is not configured; skipping initial sync")
        return
    if not CacheStore().is_empty():
        return
    try:
        logger.info("Cache is empty, starting initial sync in the background")
        get_orchestrator().start_background()
    except SyncInProgressError:
        logger.info("Initial sync skipped: a sync is already running")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting Support Cache Service")
    init_db()
    scheduler.start()
    _start_initial_sync()
    yield
    # Shutdown
    logger.info("Stopping Support Cache Service")
    scheduler.stop()


app = FastAPI(
    title="Support Cache Service",
    description="Local cache of support tickets, CRM ownership and linked tracker issues",
    version="1.0.0",
    lifespan=lifespan,
)

# Include API routers
app.include_router(sync.router)
app.include_router(cache.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "Support Cache"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "supportcache.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
