"""Headless browser renderer for JavaScript-rendered pages."""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional, Union

from playwright.async_api import Browser, BrowserContext, Page, async_playwright, TimeoutError as PlaywrightTimeoutError

from catalog_crawler import metrics
from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.errors import PageLoadError
from catalog_crawler.logging_config import get_logger

logger = get_logger(__name__, component="renderer")


STEALTH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-infobars",
    "--disable-extensions",
]


@dataclass
class RenderedPage:
    """Snapshot of a rendered page."""

    url: str
    html: str
    wait_satisfied: bool = True


class HeadlessRenderer:
    """
    Playwright Chromium renderer with an explicit lifecycle.

    ``initialize`` and ``close`` are idempotent. ``render`` initializes the
    browser lazily, so callers that never open a ``session`` still work.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Launch the browser (no-op when already running)."""
        async with self._init_lock:
            if self._context is not None:
                return

            if self._playwright is None:
                self._playwright = await async_playwright().start()

            if self._browser is None:
                self._browser = await self._playwright.chromium.launch(
                    headless=True,
                    args=STEALTH_ARGS,
                )

            self._context = await self._browser.new_context(
                user_agent=self.settings.user_agent,
                viewport={"width": 1366, "height": 900},
                locale="en-US",
            )
            logger.info("Headless browser initialized")

    async def close(self) -> None:
        """Close browser and cleanup (no-op when already closed)."""
        async with self._init_lock:
            if self._context:
                try:
                    await self._context.close()
                except Exception as e:
                    logger.error(f"Error closing browser context: {e}")
                self._context = None

            if self._browser:
                await self._browser.close()
                self._browser = None

            if self._playwright:
                await self._playwright.stop()
                self._playwright = None
                logger.info("Headless browser closed")

    @asynccontextmanager
    async def session(self):
        """Keep the browser open for the duration of the block."""
        await self.initialize()
        try:
            yield self
        finally:
            await self.close()

    async def _wait_for_any(
        self,
        page: Page,
        selectors: List[str],
        timeout_ms: int,
    ) -> Optional[str]:
        """
        Wait until one of the selectors is present.

        Returns:
            The matching selector, or None on timeout
        """
        for selector in selectors:
            if await page.query_selector(selector):
                return selector

        try:
            await page.wait_for_selector(", ".join(selectors), timeout=timeout_ms, state="attached")
        except PlaywrightTimeoutError:
            return None

        for selector in selectors:
            if await page.query_selector(selector):
                return selector
        return selectors[0]

    async def render(
        self,
        url: str,
        wait_for: Union[str, List[str], None] = None,
        wait_timeout_ms: Optional[int] = None,
        kind: str = "page",
    ) -> RenderedPage:
        """
        Navigate to a URL and return the rendered DOM.

        Args:
            url: Page URL
            wait_for: Selector(s) to wait for after navigation
            wait_timeout_ms: Selector wait budget (defaults to settings)
            kind: Metrics label ('category' or 'product')

        Returns:
            RenderedPage; ``wait_satisfied`` is False when no awaited
            selector appeared in time

        Raises:
            PageLoadError: Navigation failed or timed out
        """
        await self.initialize()
        selectors = [wait_for] if isinstance(wait_for, str) else list(wait_for or [])
        timeout_ms = wait_timeout_ms or self.settings.selector_timeout_ms

        started = time.monotonic()
        page: Optional[Page] = None
        try:
            page = await self._context.new_page()

            logger.debug(f"Navigating to {url}")
            try:
                await page.goto(
                    url,
                    wait_until="domcontentloaded",
                    timeout=self.settings.render_timeout_ms,
                )
            except PlaywrightTimeoutError:
                raise PageLoadError(url, "Navigation timeout")
            except Exception as e:
                raise PageLoadError(url, str(e))

            matched = None
            if selectors:
                matched = await self._wait_for_any(page, selectors, timeout_ms)

            html = await page.content()
            return RenderedPage(
                url=page.url or url,
                html=html,
                wait_satisfied=matched is not None or not selectors,
            )
        finally:
            if page:
                await page.close()
            metrics.page_render_duration_seconds.labels(kind=kind).observe(
                time.monotonic() - started
            )
