"""Main FastAPI application entry point."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from pet_portraits import __version__
from pet_portraits.api.routes import router
from pet_portraits.core.config import settings
from pet_portraits.core.database import async_session_factory, close_database
from pet_portraits.core.dependencies import PortraitServices, build_services
from pet_portraits.mcp.server import get_mcp_server

logger = structlog.get_logger()

scheduler = AsyncIOScheduler()


async def sweep_upscale_jobs(services: PortraitServices) -> None:
    """Periodic task evicting finished upscale jobs from the registry."""
    evicted = services.upscaler.sweep()
    logger.info(
        "upscale_sweep_completed",
        evicted_count=evicted,
        remaining=len(services.registry),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager."""
    # Startup
    logger.info("Starting Pet Portraits", version=__version__)

    services = build_services(async_session_factory)
    app.state.services = services

    # Start scheduler for registry housekeeping
    scheduler.add_job(
        sweep_upscale_jobs,
        "interval",
        minutes=settings.upscale_sweep_interval_minutes,
        id="sweep_upscale_jobs",
        args=[services],
    )
    scheduler.start()
    logger.info(
        "Scheduler started",
        sweep_interval_minutes=settings.upscale_sweep_interval_minutes,
    )

    yield

    # Shutdown
    scheduler.shutdown()
    await services.tracker.shutdown()
    await close_database()
    logger.info("Pet Portraits shutdown complete")


# Create the MCP server app
mcp_server = get_mcp_server()
mcp_app = mcp_server.http_app(path="/mcp")

app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="Asynchronous AI portrait generation and upscaling for pet photos",
    lifespan=lifespan,
)

app.include_router(router)

# Mount the MCP server at /mcp
app.mount("/mcp", mcp_app)


@app.get("/")
async def root() -> dict[str, str]:
    """Service information."""
    return {
        "name": settings.app_name,
        "version": __version__,
        "docs": "/docs",
    }
