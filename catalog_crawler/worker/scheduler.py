"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from catalog_crawler.config import settings
from catalog_crawler.errors import CrawlInProgressError
from catalog_crawler.worker.crawl_service import CrawlService

logger = logging.getLogger(__name__)


async def run_scheduled_full_crawl(service: CrawlService) -> None:
    """Daily full crawl; skipped while another job is running."""
    try:
        job = await service.run_full_crawl()
        logger.info(
            "Scheduled crawl %s completed: %d processed, %d updated",
            job.id,
            job.products_processed,
            job.products_updated,
        )
    except CrawlInProgressError as e:
        logger.info("Scheduled crawl skipped: %s", e)
    except Exception as e:
        logger.error("Scheduled crawl failed: %s", e, exc_info=True)


def setup_scheduler(service: CrawlService) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_scheduled_full_crawl,
        CronTrigger(hour=settings.daily_crawl_hour, minute=settings.daily_crawl_minute),
        args=[service],
        id="daily_full_crawl",
        name="Daily full catalog crawl",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=3600,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: full crawl daily at %02d:%02d",
        settings.daily_crawl_hour,
        settings.daily_crawl_minute,
    )

    return scheduler
