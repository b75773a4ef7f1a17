"""Tests for crawl job orchestration."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from catalog_crawler.db.models import CrawlJobStatus, CrawlJobType
from catalog_crawler.db.repository import CrawlJobRepository, ProductRepository
from catalog_crawler.errors import CrawlInProgressError, ProductRefreshError
from catalog_crawler.ingest.category_walker import CategoryWalker
from catalog_crawler.ingest.page_extractor import PageExtractor
from catalog_crawler.worker.crawl_service import CrawlService, job_progress
from tests.conftest import BASE_URL, FakeRenderer, FakeStaticFetcher
from tests.test_page_extractor import (
    CATEGORY_URL,
    EMPTY_HTML,
    META_HTML,
    STRUCTURED_HTML,
)

SIMPLE_CATEGORY_HTML = """
<html><body><div class="productGrid">
  <div class="card"><a href="/products/widget">Widget</a></div>
  <div class="card"><a href="/products/meta-gadget">Gadget</a></div>
  <div class="card"><a href="/products/mystery-item">Mystery</a></div>
</div></body></html>
"""

SITE = {
    CATEGORY_URL: SIMPLE_CATEGORY_HTML,
    f"{BASE_URL}/products/widget": STRUCTURED_HTML,
    f"{BASE_URL}/products/meta-gadget": META_HTML,
    f"{BASE_URL}/products/mystery-item": EMPTY_HTML,
}


def make_service(settings, session_factory, policy_cache, pages=None, failures=None):
    renderer = FakeRenderer(dict(SITE if pages is None else pages), failures)
    extractor = PageExtractor(renderer, policy_cache, FakeStaticFetcher(), settings)
    service = CrawlService(
        product_repo=ProductRepository(session_factory),
        job_repo=CrawlJobRepository(session_factory),
        extractor=extractor,
        walker=CategoryWalker(extractor, settings),
        renderer=renderer,
        settings=settings,
    )
    return service, renderer


@pytest.mark.asyncio
async def test_full_crawl_end_to_end(test_settings, session_factory, policy_cache, caplog):
    caplog.set_level(logging.WARNING)
    service, renderer = make_service(test_settings, session_factory, policy_cache)

    job = await service.run_full_crawl()

    assert job.status == CrawlJobStatus.COMPLETED.value
    assert job.job_type == CrawlJobType.FULL.value
    assert job.products_processed == 3
    assert job.products_updated == 3
    assert job.job_metadata == {"categories": [CATEGORY_URL]}
    assert job.started_at is not None and job.completed_at is not None

    widget = await service.product_repo.get_product_by_id("w-1")
    assert widget.price == Decimal("19.99")
    assert widget.unit == "each"
    assert (await service.product_repo.get_product_by_id("mg-200")).name == "Meta Gadget"
    placeholder = await service.product_repo.get_product_by_id("unknown-product-mystery-item")
    assert placeholder.price == Decimal("0")
    assert placeholder.is_active is False

    assert "no usable data" in caplog.text
    assert renderer.initialize_calls == 1
    assert renderer.close_calls == 1


@pytest.mark.asyncio
async def test_failed_product_does_not_abort_category(test_settings, session_factory, policy_cache):
    failing = f"{BASE_URL}/products/meta-gadget"
    service, _ = make_service(test_settings, session_factory, policy_cache, failures={failing: 5})

    job = await service.run_category_crawl(CATEGORY_URL)

    assert job.status == "completed"
    assert job.job_type == "category"
    assert job.target_url == CATEGORY_URL
    assert job.products_processed == 3
    assert job.products_updated == 2
    assert await service.product_repo.get_product_by_id("mg-200") is None


@pytest.mark.asyncio
async def test_progress_is_persisted_every_interval(test_settings, session_factory, policy_cache):
    test_settings.category_crawl_progress_interval = 2
    service, _ = make_service(test_settings, session_factory, policy_cache)
    seen = []
    update_job = service.job_repo.update_job

    async def tracking_update(job_id, **fields):
        seen.append(fields)
        return await update_job(job_id, **fields)

    service.job_repo.update_job = tracking_update

    await service.run_category_crawl(CATEGORY_URL)

    assert {"products_processed": 2, "products_updated": 2} in seen


@pytest.mark.asyncio
async def test_progress_write_failure_does_not_drop_products(test_settings, session_factory, policy_cache):
    test_settings.full_crawl_progress_interval = 1
    service, _ = make_service(test_settings, session_factory, policy_cache)
    update_job = service.job_repo.update_job

    async def flaky_update(job_id, **fields):
        if "status" not in fields:
            raise RuntimeError("job store unavailable")
        return await update_job(job_id, **fields)

    service.job_repo.update_job = flaky_update

    job = await service.run_full_crawl()

    assert job.status == "completed"
    assert (job.products_processed, job.products_updated) == (3, 3)
    assert await service.product_repo.get_product_by_id("mg-200") is not None
    assert await service.product_repo.get_product_by_id("unknown-product-mystery-item") is not None

@pytest.mark.asyncio
@pytest.mark.parametrize("operation", ["full", "category", "product"])
async def test_single_flight(test_settings, session_factory, policy_cache, operation):
    service, renderer = make_service(test_settings, session_factory, policy_cache)
    running = await service.job_repo.create_job(CrawlJobType.FULL)
    await service.job_repo.update_job(running.id, status=CrawlJobStatus.RUNNING)

    calls = {
        "full": service.run_full_crawl,
        "category": lambda: service.run_category_crawl(CATEGORY_URL),
        "product": lambda: service.run_product_refresh(f"{BASE_URL}/products/widget"),
    }

    with pytest.raises(CrawlInProgressError) as exc_info:
        await calls[operation]()

    assert exc_info.value.job_id == running.id
    assert running.id in str(exc_info.value)
    assert len(await service.get_recent_jobs(limit=10)) == 1
    assert renderer.initialize_calls == 0


@pytest.mark.asyncio
async def test_fatal_error_marks_job_failed(test_settings, session_factory, policy_cache):
    service, renderer = make_service(test_settings, session_factory, policy_cache)

    async def broken_initialize():
        raise RuntimeError("browser failed to launch")

    renderer.initialize = broken_initialize

    with pytest.raises(RuntimeError):
        await service.run_full_crawl()

    job = (await service.get_recent_jobs(limit=1))[0]
    assert job.status == "failed"
    assert job.error_message == "browser failed to launch"
    assert await service.get_current_job() is None


@pytest.mark.asyncio
async def test_product_refresh(test_settings, session_factory, policy_cache):
    service, renderer = make_service(test_settings, session_factory, policy_cache)

    job = await service.run_product_refresh(f"{BASE_URL}/products/widget")

    assert job.status == "completed"
    assert (job.products_processed, job.products_updated) == (1, 1)
    assert renderer.close_calls == 1
    assert (await service.get_job(job.id)).id == job.id


@pytest.mark.asyncio
async def test_product_refresh_failure(test_settings, session_factory, policy_cache):
    url = f"{BASE_URL}/products/gone"
    service, renderer = make_service(test_settings, session_factory, policy_cache)

    with pytest.raises(ProductRefreshError) as exc_info:
        await service.run_product_refresh(url)

    assert "Failed after 3 attempts" in str(exc_info.value)
    job = (await service.get_recent_jobs(limit=1))[0]
    assert job.status == "failed"
    assert job.target_url == url
    assert "Failed after 3 attempts" in job.error_message
    assert renderer.close_calls == 1


@pytest.mark.asyncio
async def test_refresh_stored_product(test_settings, session_factory, policy_cache):
    service, _ = make_service(test_settings, session_factory, policy_cache)
    await service.run_product_refresh(f"{BASE_URL}/products/widget")

    job = await service.refresh_stored_product("w-1")
    assert job.target_url == f"{BASE_URL}/products/widget"

    with pytest.raises(LookupError):
        await service.refresh_stored_product("missing")


def test_job_progress_running_indeterminate():
    now = datetime(2026, 1, 1, 12, 0, 0)
    job = SimpleNamespace(
        status="running",
        started_at=now - timedelta(minutes=2),
        completed_at=None,
        products_processed=20,
        job_metadata={"categories": []},
    )

    progress = job_progress(job, now)

    assert progress.progress_percentage == -1
    assert progress.duration_seconds == 120
    assert progress.avg_products_per_minute == 10
    assert progress.estimated_completion is None


def test_job_progress_running_with_expected_total():
    now = datetime(2026, 1, 1, 12, 0, 0)
    job = SimpleNamespace(
        status="running",
        started_at=now - timedelta(minutes=10),
        completed_at=None,
        products_processed=50,
        job_metadata={"expectedTotal": 100},
    )

    progress = job_progress(job, now)

    assert progress.progress_percentage == 50
    assert progress.avg_products_per_minute == 5
    assert progress.estimated_completion == now + timedelta(minutes=10)


def test_job_progress_finished_jobs():
    start = datetime(2026, 1, 1, 12, 0, 0)
    completed = SimpleNamespace(
        status="completed",
        started_at=start,
        completed_at=start + timedelta(minutes=3),
        products_processed=30,
        job_metadata=None,
    )
    failed = SimpleNamespace(
        status="failed",
        started_at=start,
        completed_at=start + timedelta(seconds=45),
        products_processed=2,
        job_metadata=None,
    )

    done = job_progress(completed)
    assert done.progress_percentage == 100
    assert done.duration_seconds == 180
    assert done.avg_products_per_minute == 10

    broken = job_progress(failed)
    assert broken.progress_percentage == 0
    assert broken.duration_seconds == 45
