"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from prometheus_client import make_asgi_app

from catalog_crawler.api.routes import crawl
from catalog_crawler.config import settings
from catalog_crawler.db.session import init_db
from catalog_crawler.logging_config import setup_logging
from catalog_crawler.worker.crawl_service import build_crawl_service
from catalog_crawler.worker.scheduler import setup_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    setup_logging()
    logger.info("Starting Catalog Crawler...")

    await init_db()

    service = build_crawl_service(settings)
    app.state.crawl_service = service

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = setup_scheduler(service)
        scheduler.start()
        logger.info("Scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")

    if scheduler:
        scheduler.shutdown()

    try:
        await service.close()
    except Exception:
        logger.exception("Error closing crawler resources")

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Catalog Crawler",
    description="Crawl a vendor catalog into normalized product records",
    version="0.1.0",
    lifespan=lifespan,
)

# Prometheus exposition
app.mount("/metrics", make_asgi_app())

# Include API routes
app.include_router(crawl.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "catalog_crawler.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
