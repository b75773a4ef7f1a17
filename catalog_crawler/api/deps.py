"""FastAPI dependencies."""

from fastapi import HTTPException, Request, status

from catalog_crawler.worker.crawl_service import CrawlService


def get_crawl_service(request: Request) -> CrawlService:
    """Dependency for the process-wide crawl service."""
    service = getattr(request.app.state, "crawl_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Crawl service not initialized",
        )
    return service
