"""Static HTML fetcher for server-rendered pages."""

from typing import Optional

import httpx

from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.errors import PageLoadError
from catalog_crawler.logging_config import get_logger

logger = get_logger(__name__, component="static-fetcher")


class StaticPageFetcher:
    """Fetch raw HTML over plain HTTP, without rendering."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or default_settings
        self._http_client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.static_request_timeout,
                follow_redirects=True,
                headers={
                    "User-Agent": self.settings.user_agent,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "Accept-Language": "en-US,en;q=0.9",
                },
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_html(self, url: str) -> str:
        """
        Fetch the raw HTML of a page.

        Raises:
            PageLoadError: On network errors or non-2xx responses
        """
        client = await self._get_client()
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise PageLoadError(url, f"{type(e).__name__}: {e}")

        if not response.is_success:
            raise PageLoadError(url, f"HTTP {response.status_code}")

        logger.debug(f"Fetched {len(response.text)} bytes of static HTML from {url}")
        return response.text
