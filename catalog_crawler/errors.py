"""Exception types raised by the crawl pipeline."""

from typing import List, Optional


class CrawlerError(Exception):
    """Base class for crawler errors."""


class PolicyDeniedError(CrawlerError):
    """robots.txt forbids fetching the URL."""

    def __init__(self, url: str, matched_rule: Optional[str] = None):
        self.url = url
        self.matched_rule = matched_rule
        super().__init__(f"Blocked by robots.txt: {matched_rule}")


class PageLoadError(CrawlerError):
    """Page failed to load properly."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to load {url}: {reason}")


class SelectorNotFoundError(CrawlerError):
    """None of the awaited selectors appeared before the timeout."""

    def __init__(self, selectors: List[str], url: str):
        self.selectors = selectors
        self.url = url
        super().__init__(f"None of {len(selectors)} selectors found on {url}")


class CrawlInProgressError(CrawlerError):
    """Another crawl job is already running."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Crawl already in progress (Job ID: {job_id})")


class ProductRefreshError(CrawlerError):
    """A single-product refresh produced no product."""


class InvalidJobTransitionError(CrawlerError):
    """A job status change violates the job lifecycle."""

    def __init__(self, job_id: str, current: str, requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid status transition for job {job_id}: {current} -> {requested}"
        )
