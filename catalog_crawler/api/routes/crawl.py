"""Crawl management API endpoints."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel

from catalog_crawler.api.deps import get_crawl_service
from catalog_crawler.db.models import CrawlJob
from catalog_crawler.errors import CrawlInProgressError, ProductRefreshError
from catalog_crawler.worker.crawl_service import CrawlService, job_progress

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/crawl", tags=["crawl"])


# Response models
class CrawlJobResponse(BaseModel):
    """Response model for a crawl job."""
    id: str
    job_type: str
    status: str
    target_url: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    products_processed: int
    products_updated: int
    error_message: Optional[str]
    metadata: Optional[Dict[str, Any]]
    created_at: datetime
    progress_percentage: int
    duration_seconds: Optional[int]
    avg_products_per_minute: int
    estimated_completion: Optional[datetime]


class CrawlAcceptedResponse(BaseModel):
    """Response model for a crawl accepted for background execution."""
    message: str
    job_type: str
    target_url: Optional[str] = None


class CategoryCrawlRequest(BaseModel):
    """Request model for a single-category crawl."""
    category_url: str


def _job_response(job: CrawlJob) -> CrawlJobResponse:
    progress = job_progress(job)
    return CrawlJobResponse(
        id=job.id,
        job_type=job.job_type,
        status=job.status,
        target_url=job.target_url,
        started_at=job.started_at,
        completed_at=job.completed_at,
        products_processed=job.products_processed,
        products_updated=job.products_updated,
        error_message=job.error_message,
        metadata=job.job_metadata,
        created_at=job.created_at,
        progress_percentage=progress.progress_percentage,
        duration_seconds=progress.duration_seconds,
        avg_products_per_minute=progress.avg_products_per_minute,
        estimated_completion=progress.estimated_completion,
    )


async def _reject_if_running(service: CrawlService) -> None:
    current = await service.get_current_job()
    if current is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(CrawlInProgressError(current.id)),
        )


async def _run_in_background(operation, *args) -> None:
    """Run a crawl after the response is sent; failures are already on the job record."""
    try:
        await operation(*args)
    except CrawlInProgressError as e:
        logger.info(f"Background crawl not started: {e}")
    except Exception as e:
        logger.error(f"Background crawl failed: {e}", exc_info=True)


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=CrawlAcceptedResponse)
async def trigger_full_crawl(
    background_tasks: BackgroundTasks,
    service: CrawlService = Depends(get_crawl_service),
):
    """Start a full crawl of every configured category."""
    await _reject_if_running(service)
    background_tasks.add_task(_run_in_background, service.run_full_crawl)
    return CrawlAcceptedResponse(message="Crawl job started", job_type="full")


@router.post("/category", status_code=status.HTTP_202_ACCEPTED, response_model=CrawlAcceptedResponse)
async def trigger_category_crawl(
    request: CategoryCrawlRequest,
    background_tasks: BackgroundTasks,
    service: CrawlService = Depends(get_crawl_service),
):
    """Start a crawl of one category."""
    await _reject_if_running(service)
    background_tasks.add_task(_run_in_background, service.run_category_crawl, request.category_url)
    return CrawlAcceptedResponse(
        message="Category crawl started",
        job_type="category",
        target_url=request.category_url,
    )


@router.post("/products/{product_id}/refresh", response_model=CrawlJobResponse)
async def refresh_product(
    product_id: str,
    service: CrawlService = Depends(get_crawl_service),
):
    """Re-crawl one stored product and wait for the result."""
    try:
        job = await service.refresh_stored_product(product_id)
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except CrawlInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ProductRefreshError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to refresh product: {e}",
        )
    return _job_response(job)


@router.get("/jobs", response_model=List[CrawlJobResponse])
async def list_jobs(
    limit: int = 10,
    service: CrawlService = Depends(get_crawl_service),
):
    """List the most recent crawl jobs."""
    jobs = await service.get_recent_jobs(max(1, min(limit, 100)))
    return [_job_response(job) for job in jobs]


@router.get("/jobs/current", response_model=Optional[CrawlJobResponse])
async def get_current_job(service: CrawlService = Depends(get_crawl_service)):
    """Get the running crawl job, if any."""
    job = await service.get_current_job()
    return _job_response(job) if job else None


@router.get("/jobs/{job_id}", response_model=CrawlJobResponse)
async def get_job(
    job_id: str,
    service: CrawlService = Depends(get_crawl_service),
):
    """Get a crawl job by id."""
    job = await service.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)
