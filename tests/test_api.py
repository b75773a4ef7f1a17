"""Tests for the crawl API endpoints."""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from catalog_crawler.api.routes import crawl
from catalog_crawler.errors import CrawlInProgressError, ProductRefreshError


def make_job(job_id="abc123", status="completed", job_type="full", **overrides):
    started = datetime(2026, 1, 1, 3, 0, 0)
    fields = dict(
        id=job_id,
        job_type=job_type,
        status=status,
        target_url=None,
        started_at=started,
        completed_at=started + timedelta(minutes=2) if status in ("completed", "failed") else None,
        products_processed=40,
        products_updated=38,
        error_message=None,
        job_metadata={"categories": ["https://shop.test/category/widgets/"]},
        created_at=started,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


class FakeCrawlService:
    def __init__(self, current=None, jobs=None, refresh_error=None):
        self.current = current
        self.jobs = jobs or []
        self.refresh_error = refresh_error
        self.calls = []

    async def get_current_job(self):
        return self.current

    async def get_recent_jobs(self, limit=10):
        return self.jobs[:limit]

    async def get_job(self, job_id):
        return next((job for job in self.jobs if job.id == job_id), None)

    async def run_full_crawl(self):
        self.calls.append(("full",))
        return make_job()

    async def run_category_crawl(self, category_url):
        self.calls.append(("category", category_url))
        return make_job(job_type="category", target_url=category_url)

    async def refresh_stored_product(self, product_id):
        self.calls.append(("refresh", product_id))
        if self.refresh_error:
            raise self.refresh_error
        return make_job(job_type="product", target_url=f"https://shop.test/products/{product_id}")


def make_client(service: FakeCrawlService) -> TestClient:
    app = FastAPI()
    app.include_router(crawl.router)
    app.state.crawl_service = service
    return TestClient(app)


def test_trigger_full_crawl_runs_in_background():
    service = FakeCrawlService()
    client = make_client(service)

    response = client.post("/api/crawl")

    assert response.status_code == 202
    assert response.json()["job_type"] == "full"
    assert service.calls == [("full",)]


def test_trigger_rejected_while_running():
    service = FakeCrawlService(current=make_job("running-1", status="running"))
    client = make_client(service)

    response = client.post("/api/crawl")

    assert response.status_code == 409
    assert "running-1" in response.json()["detail"]
    assert service.calls == []


def test_trigger_category_crawl():
    service = FakeCrawlService()
    client = make_client(service)

    response = client.post("/api/crawl/category", json={"category_url": "https://shop.test/category/panels/"})

    assert response.status_code == 202
    assert service.calls == [("category", "https://shop.test/category/panels/")]

    assert client.post("/api/crawl/category", json={}).status_code == 422


@pytest.mark.parametrize(
    "error,status_code",
    [
        (LookupError("Product not found: missing"), 404),
        (CrawlInProgressError("running-1"), 409),
        (ProductRefreshError("Failed after 3 attempts: Navigation timeout"), 502),
    ],
)
def test_refresh_product_errors(error, status_code):
    client = make_client(FakeCrawlService(refresh_error=error))

    response = client.post("/api/crawl/products/missing/refresh")

    assert response.status_code == status_code


def test_refresh_product_returns_job():
    client = make_client(FakeCrawlService())

    response = client.post("/api/crawl/products/w-1/refresh")

    assert response.status_code == 200
    body = response.json()
    assert body["job_type"] == "product"
    assert body["target_url"] == "https://shop.test/products/w-1"
    assert body["progress_percentage"] == 100


def test_list_and_get_jobs():
    jobs = [make_job("job-2"), make_job("job-1", status="failed", error_message="boom")]
    client = make_client(FakeCrawlService(jobs=jobs))

    listed = client.get("/api/crawl/jobs", params={"limit": 1}).json()
    assert [job["id"] for job in listed] == ["job-2"]
    assert listed[0]["duration_seconds"] == 120
    assert listed[0]["avg_products_per_minute"] == 20
    assert listed[0]["metadata"] == {"categories": ["https://shop.test/category/widgets/"]}

    failed = client.get("/api/crawl/jobs/job-1").json()
    assert failed["status"] == "failed"
    assert failed["error_message"] == "boom"

    assert client.get("/api/crawl/jobs/nope").status_code == 404


def test_current_job():
    idle = make_client(FakeCrawlService())
    assert idle.get("/api/crawl/jobs/current").json() is None

    running = make_job("running-1", status="running")
    busy = make_client(FakeCrawlService(current=running))
    body = busy.get("/api/crawl/jobs/current").json()
    assert body["id"] == "running-1"
    assert body["progress_percentage"] == -1


def test_missing_service_is_unavailable():
    app = FastAPI()
    app.include_router(crawl.router)
    client = TestClient(app)

    assert client.get("/api/crawl/jobs").status_code == 503
