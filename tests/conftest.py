"""Shared fixtures and fakes for crawler tests."""

from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import httpx
import pytest
from selectolax.parser import HTMLParser
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from catalog_crawler.config import Settings
from catalog_crawler.db.models import Base
from catalog_crawler.errors import PageLoadError
from catalog_crawler.ingest.fetchers.headless import RenderedPage
from catalog_crawler.ingest.robots import PolicyCache

BASE_URL = "https://shop.test"


class FakeRenderer:
    """Serves canned HTML per URL; can fail a URL a set number of times."""

    def __init__(self, pages: Optional[Dict[str, str]] = None, failures: Optional[Dict[str, int]] = None):
        self.pages = pages or {}
        self.failures = dict(failures or {})
        self.rendered: List[str] = []
        self.initialize_calls = 0
        self.close_calls = 0

    async def initialize(self):
        self.initialize_calls += 1

    async def close(self):
        self.close_calls += 1

    @asynccontextmanager
    async def session(self):
        await self.initialize()
        try:
            yield self
        finally:
            await self.close()

    async def render(self, url, wait_for=None, wait_timeout_ms=None, kind="page"):
        self.rendered.append(url)
        if self.failures.get(url, 0) > 0:
            self.failures[url] -= 1
            raise PageLoadError(url, "Navigation timeout")
        if url not in self.pages:
            raise PageLoadError(url, "HTTP 404")

        html = self.pages[url]
        selectors = [wait_for] if isinstance(wait_for, str) else list(wait_for or [])
        tree = HTMLParser(html)
        matched = next((s for s in selectors if tree.css_first(s) is not None), None)
        return RenderedPage(
            url=url,
            html=html,
            wait_satisfied=matched is not None or not selectors,
        )


class FakeStaticFetcher:
    """Static fetcher backed by a dict; unknown URLs fail like a 404."""

    def __init__(self, pages: Optional[Dict[str, str]] = None):
        self.pages = pages or {}
        self.fetched: List[str] = []

    async def fetch_html(self, url):
        self.fetched.append(url)
        if url not in self.pages:
            raise PageLoadError(url, "HTTP 404")
        return self.pages[url]

    async def close(self):
        pass


def robots_client(robots_txt: Optional[str] = None, status_code: int = 200, calls: Optional[list] = None):
    """httpx client serving a fixed robots.txt (404 when ``robots_txt`` is None)."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(str(request.url))
        if robots_txt is None:
            return httpx.Response(404, text="Not Found")
        return httpx.Response(status_code, text=robots_txt)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        site_base_url=BASE_URL,
        vendor="TestVendor",
        category_urls=[f"{BASE_URL}/category/widgets/"],
        delay_ms=0,
        max_retries=3,
        product_path_segments=["/products/"],
        scheduler_enabled=False,
    )


@pytest.fixture
async def policy_cache(test_settings):
    cache = PolicyCache(test_settings, client=robots_client(None))
    yield cache
    await cache._http_client.aclose()


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crawler.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
