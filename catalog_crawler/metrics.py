"""Prometheus metrics for the catalog crawler."""

from prometheus_client import Counter, Histogram, Info

# Application info
app_info = Info("catalog_crawler", "Catalog crawler application info")
app_info.info({"version": "0.1.0", "name": "catalog-crawler"})

crawl_jobs_total = Counter(
    "crawl_jobs_total",
    "Crawl jobs by type and final status",
    ["job_type", "status"],
)

crawl_in_progress_rejections_total = Counter(
    "crawl_in_progress_rejections_total",
    "Crawl requests rejected because another job was running",
    ["job_type"],
)

products_extracted_total = Counter(
    "products_extracted_total",
    "Product extraction outcomes",
    ["status"],
)

robots_denials_total = Counter(
    "robots_denials_total",
    "Fetches refused by robots.txt",
    ["kind"],
)

page_render_duration_seconds = Histogram(
    "page_render_duration_seconds",
    "Time spent rendering pages in the headless browser",
    ["kind"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)


def record_job_finished(job_type: str, status: str) -> None:
    """Record a job reaching a terminal status."""
    crawl_jobs_total.labels(job_type=job_type, status=status).inc()


def record_crawl_rejected(job_type: str) -> None:
    """Record a crawl refused by the single-flight check."""
    crawl_in_progress_rejections_total.labels(job_type=job_type).inc()


def record_product_extraction(status: str) -> None:
    """Record a product extraction outcome ('success', 'failed', 'empty', 'blocked')."""
    products_extracted_total.labels(status=status).inc()


def record_robots_denial(kind: str) -> None:
    """Record a robots.txt denial for a 'category' or 'product' page."""
    robots_denials_total.labels(kind=kind).inc()
