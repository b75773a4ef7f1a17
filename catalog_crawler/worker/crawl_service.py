"""Crawl job orchestration.

``CrawlService`` runs full, category and single-product crawls, records
each run as a CrawlJob and refuses to start while another job is running.
The running-job check is a read followed by an insert against the job
table, so two callers racing past the check can both start a job.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from catalog_crawler import metrics
from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.db.models import CrawlJob, CrawlJobStatus, CrawlJobType
from catalog_crawler.db.repository import CrawlJobRepository, ProductRepository
from catalog_crawler.errors import CrawlInProgressError, ProductRefreshError
from catalog_crawler.ingest.category_walker import CategoryWalker
from catalog_crawler.ingest.fetchers.headless import HeadlessRenderer
from catalog_crawler.ingest.page_extractor import PageExtractor
from catalog_crawler.logging_config import get_logger, log_operation

logger = get_logger(__name__, component="crawl-service")


@dataclass
class CrawlCounters:
    """Running totals for a job."""

    processed: int = 0
    updated: int = 0


@dataclass
class JobProgress:
    """Derived progress figures for a job."""

    progress_percentage: int
    duration_seconds: Optional[int]
    avg_products_per_minute: int
    estimated_completion: Optional[datetime]


def job_progress(job: CrawlJob, now: Optional[datetime] = None) -> JobProgress:
    """
    Compute progress for a job.

    Running jobs report -1 (indeterminate) unless their metadata carries
    ``expectedTotal``; completed jobs report 100.
    """
    now = now or datetime.utcnow()
    progress = JobProgress(
        progress_percentage=0,
        duration_seconds=None,
        avg_products_per_minute=0,
        estimated_completion=None,
    )
    processed = job.products_processed or 0

    if job.status == CrawlJobStatus.RUNNING.value and job.started_at:
        elapsed = (now - job.started_at).total_seconds()
        progress.duration_seconds = round(elapsed)
        if elapsed > 0 and processed > 0:
            progress.avg_products_per_minute = round(processed / (elapsed / 60))

        expected_total = (job.job_metadata or {}).get("expectedTotal")
        if expected_total:
            progress.progress_percentage = min(100, round(processed / expected_total * 100))
            if progress.avg_products_per_minute > 0:
                remaining_minutes = (expected_total - processed) / progress.avg_products_per_minute
                progress.estimated_completion = now + timedelta(minutes=remaining_minutes)
        else:
            progress.progress_percentage = -1

    elif job.status == CrawlJobStatus.COMPLETED.value and job.started_at and job.completed_at:
        elapsed = (job.completed_at - job.started_at).total_seconds()
        progress.duration_seconds = round(elapsed)
        progress.progress_percentage = 100
        if elapsed > 0 and processed > 0:
            progress.avg_products_per_minute = round(processed / (elapsed / 60))

    elif job.status == CrawlJobStatus.FAILED.value and job.started_at and job.completed_at:
        progress.duration_seconds = round((job.completed_at - job.started_at).total_seconds())

    return progress


class CrawlService:
    """
    Sequences crawl runs over injected collaborators.

    The renderer is held open for the whole of a run through
    ``renderer.session()`` and released on every exit path.
    """

    def __init__(
        self,
        product_repo: ProductRepository,
        job_repo: CrawlJobRepository,
        extractor: PageExtractor,
        walker: CategoryWalker,
        renderer: HeadlessRenderer,
        settings: Optional[Settings] = None,
        category_urls: Optional[List[str]] = None,
    ):
        self.settings = settings or default_settings
        self.product_repo = product_repo
        self.job_repo = job_repo
        self.extractor = extractor
        self.walker = walker
        self.renderer = renderer
        self.category_urls = list(category_urls or self.settings.category_urls)

    async def _ensure_no_running_job(self, job_type: CrawlJobType) -> None:
        running = await self.job_repo.get_running_job()
        if running is not None:
            metrics.record_crawl_rejected(job_type.value)
            logger.warning(f"Refusing {job_type.value} crawl, job {running.id} is running")
            raise CrawlInProgressError(running.id)

    async def _start_job(
        self,
        job_type: CrawlJobType,
        target_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> CrawlJob:
        await self._ensure_no_running_job(job_type)
        job = await self.job_repo.create_job(job_type, target_url=target_url, metadata=metadata)
        return await self.job_repo.update_job(job.id, status=CrawlJobStatus.RUNNING)

    async def _fail_job(self, job: CrawlJob, error: Exception) -> None:
        try:
            await self.job_repo.update_job(
                job.id,
                status=CrawlJobStatus.FAILED,
                error_message=str(error)[:1000],
            )
        except Exception as e:
            logger.error(f"Could not mark job {job.id} failed: {e}", exc_info=True)
        metrics.record_job_finished(job.job_type, CrawlJobStatus.FAILED.value)

    async def _complete_job(self, job: CrawlJob, processed: int, updated: int) -> CrawlJob:
        job = await self.job_repo.update_job(
            job.id,
            status=CrawlJobStatus.COMPLETED,
            products_processed=processed,
            products_updated=updated,
        )
        metrics.record_job_finished(job.job_type, CrawlJobStatus.COMPLETED.value)
        return job

    async def _crawl_products(
        self,
        job: CrawlJob,
        product_urls: List[str],
        counters: CrawlCounters,
        progress_interval: int,
    ) -> None:
        """
        Extract and store each product URL in order.

        A failed product or progress write is logged and skipped. Counters are persisted
        every ``progress_interval`` processed products.
        """
        for url in product_urls:
            counters.processed += 1
            try:
                result = await self.extractor.extract_product(url)

                if result.success and result.product is not None:
                    await self.product_repo.upsert_product(result.product)
                    counters.updated += 1
                else:
                    logger.warning(f"Skipping {url}: {result.error}")

                if counters.processed % progress_interval == 0:
                    await self.job_repo.update_job(
                        job.id,
                        products_processed=counters.processed,
                        products_updated=counters.updated,
                    )
                    logger.info(
                        f"Job {job.id} progress: {counters.processed} processed, {counters.updated} updated"
                    )

            except Exception as e:
                logger.error(f"Failed to process product {url}: {e}", exc_info=True)

    async def run_full_crawl(self) -> CrawlJob:
        """
        Crawl every configured category in order.

        Raises:
            CrawlInProgressError: Another job is running (no job is created)
        """
        job = await self._start_job(
            CrawlJobType.FULL,
            metadata={"categories": self.category_urls},
        )

        async with log_operation(logger, "full_crawl", job_id=job.id):
            try:
                counters = CrawlCounters()
                async with self.renderer.session():
                    for category_url in self.category_urls:
                        try:
                            product_urls = await self.walker.walk_category(category_url)
                            logger.info(f"Found {len(product_urls)} products in {category_url}")
                            await self._crawl_products(
                                job,
                                product_urls,
                                counters,
                                self.settings.full_crawl_progress_interval,
                            )
                        except Exception as e:
                            logger.error(f"Failed to crawl category {category_url}: {e}", exc_info=True)

                return await self._complete_job(job, counters.processed, counters.updated)

            except Exception as e:
                await self._fail_job(job, e)
                raise

    async def run_category_crawl(self, category_url: str) -> CrawlJob:
        """
        Crawl a single category.

        Raises:
            CrawlInProgressError: Another job is running (no job is created)
        """
        job = await self._start_job(CrawlJobType.CATEGORY, target_url=category_url)

        async with log_operation(logger, "category_crawl", job_id=job.id, url=category_url):
            try:
                async with self.renderer.session():
                    product_urls = await self.walker.walk_category(category_url)
                    counters = CrawlCounters()
                    await self._crawl_products(
                        job,
                        product_urls,
                        counters,
                        self.settings.category_crawl_progress_interval,
                    )

                return await self._complete_job(job, counters.processed, counters.updated)

            except Exception as e:
                await self._fail_job(job, e)
                raise

    async def run_product_refresh(self, product_url: str) -> CrawlJob:
        """
        Re-extract and store one product.

        Raises:
            CrawlInProgressError: Another job is running (no job is created)
            ProductRefreshError: Extraction or storage failed; the job is
                marked failed
        """
        job = await self._start_job(CrawlJobType.PRODUCT, target_url=product_url)

        async with log_operation(logger, "product_refresh", job_id=job.id, url=product_url):
            try:
                async with self.renderer.session():
                    result = await self.extractor.extract_product(product_url)
                    if not result.success or result.product is None:
                        raise ProductRefreshError(result.error or "Failed to extract product")
                    await self.product_repo.upsert_product(result.product)

                return await self._complete_job(job, 1, 1)

            except ProductRefreshError as e:
                await self._fail_job(job, e)
                raise
            except Exception as e:
                await self._fail_job(job, e)
                raise ProductRefreshError(str(e)) from e

    async def refresh_stored_product(self, product_id: str) -> CrawlJob:
        """
        Refresh a stored product from its source URL.

        Raises:
            LookupError: Unknown product, or the product has no URL
        """
        product = await self.product_repo.get_product_by_id(product_id)
        if product is None:
            raise LookupError(f"Product not found: {product_id}")
        if not product.url:
            raise LookupError(f"Product {product_id} has no source URL")
        return await self.run_product_refresh(product.url)

    async def get_job(self, job_id: str) -> Optional[CrawlJob]:
        return await self.job_repo.get_job_by_id(job_id)

    async def get_recent_jobs(self, limit: int = 10) -> List[CrawlJob]:
        return await self.job_repo.get_recent_jobs(limit)

    async def get_current_job(self) -> Optional[CrawlJob]:
        return await self.job_repo.get_running_job()

    async def close(self) -> None:
        """Release the renderer, the policy cache and the static fetcher."""
        await self.renderer.close()
        await self.extractor.policy_cache.close()
        if self.extractor.static_fetcher is not None:
            await self.extractor.static_fetcher.close()


def build_crawl_service(
    settings: Optional[Settings] = None,
    session_factory=None,
) -> CrawlService:
    """Wire a CrawlService with production collaborators."""
    from catalog_crawler.ingest.fetchers.static import StaticPageFetcher
    from catalog_crawler.ingest.robots import PolicyCache

    settings = settings or default_settings
    if session_factory is None:
        from catalog_crawler.db.session import AsyncSessionLocal

        session_factory = AsyncSessionLocal

    renderer = HeadlessRenderer(settings)
    extractor = PageExtractor(
        renderer=renderer,
        policy_cache=PolicyCache(settings),
        static_fetcher=StaticPageFetcher(settings),
        settings=settings,
    )
    return CrawlService(
        product_repo=ProductRepository(session_factory),
        job_repo=CrawlJobRepository(session_factory),
        extractor=extractor,
        walker=CategoryWalker(extractor, settings),
        renderer=renderer,
        settings=settings,
    )
