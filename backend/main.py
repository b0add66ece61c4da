"""
Mention Leaderboard Backend - Main FastAPI Application

Run with:
    uvicorn main:app --reload --port 8000
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from adapter.rate_limiter import create_x_api_limiter
from adapter.x import PaginatedFetcher, XAdapter
from api import router, set_dependencies
from config import load_settings
from core import QueryService, RefreshCoordinator, RefreshScheduler
from monitoring import monitor
from services import SnapshotStore

settings = load_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - setup and teardown.
    """
    logger.info(f"Starting mention leaderboard backend for @{settings.target_handle}...")

    rate_limiter = create_x_api_limiter()
    x_adapter = XAdapter(
        bearer_token=settings.x_bearer_token,
        rate_limiter=rate_limiter,
    )
    if x_adapter.is_configured:
        logger.info("✓ X Adapter configured")
    else:
        logger.warning("⚠ X Adapter not configured - set X_BEARER_TOKEN")

    fetcher = PaginatedFetcher(
        x_adapter,
        page_delay=settings.page_delay,
        max_pages=settings.max_pages,
        max_duration=settings.max_fetch_seconds,
    )
    store = SnapshotStore(settings.snapshot_path)

    coordinator = RefreshCoordinator(
        fetcher=fetcher,
        store=store,
        target_handle=settings.target_handle,
        full_refresh_interval=settings.full_refresh_interval,
        max_mentions=settings.max_mentions,
    )
    snapshot = coordinator.load()
    logger.info(f"✓ Snapshot ready ({snapshot.total_mentions} cached mentions)")

    query_service = QueryService(
        coordinator,
        cache_ttl=settings.cache_ttl,
        background_refresh=settings.background_refresh_on_read,
    )
    scheduler = RefreshScheduler(coordinator, interval=settings.incremental_check_interval)

    set_dependencies(query_service, coordinator, scheduler, rate_limiter)

    monitor.set_component_status(
        "x_adapter",
        "healthy" if x_adapter.is_configured else "warning",
        {"configured": x_adapter.is_configured}
    )
    monitor.set_component_status("snapshot_store", "healthy", {"path": str(store.path)})

    if settings.auto_refresh:
        await scheduler.start()
        monitor.set_component_status("scheduler", "healthy", {"interval": settings.incremental_check_interval})
        logger.info(f"✓ RefreshScheduler started (interval: {settings.incremental_check_interval}s)")
    else:
        monitor.set_component_status("scheduler", "warning", {"enabled": False})
        logger.info("ℹ Background refresh disabled (set AUTO_REFRESH=true to enable)")

    logger.info("Mention leaderboard backend ready!")

    yield  # Application runs here

    logger.info("Shutting down mention leaderboard backend...")
    await scheduler.stop()
    await query_service.close()
    logger.info("Goodbye!")


app = FastAPI(
    title="Mention Leaderboard API",
    description="Ranks the accounts that mention a tracked X handle",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)


@app.get("/")
async def root():
    return {"name": "Mention Leaderboard API", "version": "1.0.0", "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=True,
    )
