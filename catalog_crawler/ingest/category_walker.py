"""Follow category pagination and collect product URLs."""

from typing import List, Optional

from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.ingest.page_extractor import PageExtractor
from catalog_crawler.logging_config import get_logger, log_operation

logger = get_logger(__name__, component="category-walker")


class CategoryWalker:
    """Walk a category's pages through the extractor."""

    def __init__(self, extractor: PageExtractor, settings: Optional[Settings] = None):
        self.extractor = extractor
        self.settings = settings or default_settings

    async def walk_category(self, start_url: str, max_pages: Optional[int] = None) -> List[str]:
        """
        Collect product URLs from a category and its following pages.

        The walk stops when a page has no next link, after ``max_pages``
        pages, or when a page fails to extract. URLs gathered before a
        failure are kept. The page ceiling also bounds pagination cycles.

        Returns:
            Product URLs in discovery order, without duplicates
        """
        if max_pages is None:
            max_pages = self.settings.max_category_pages
        product_urls: List[str] = []
        current_url: Optional[str] = start_url
        page_count = 0
        failed = False

        async with log_operation(logger, "walk_category", url=start_url):
            while current_url and page_count < max_pages:
                result = await self.extractor.extract_category(current_url)
                page_count += 1

                if not result.success:
                    logger.error(
                        f"Stopping walk of {start_url} at page {page_count}: {result.error}"
                    )
                    failed = True
                    break

                product_urls.extend(result.product_urls)
                current_url = result.next_page_url

            if not failed and current_url and page_count >= max_pages:
                logger.warning(f"Reached page limit ({max_pages}) for {start_url}")

            unique_urls = list(dict.fromkeys(product_urls))
            logger.info(
                f"Walked {page_count} pages of {start_url}, found {len(unique_urls)} products"
            )
            return unique_urls
