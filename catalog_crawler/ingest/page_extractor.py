"""Category and product page extraction.

Pages are rendered in the headless browser and parsed with selectolax.
Product fields come from up to four layers, each filling only what the
previous layers left empty: JSON-LD, meta tags, rendered-DOM selectors and
a static-HTML pass over the raw server response.
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

from selectolax.parser import HTMLParser, Node

from catalog_crawler import metrics
from catalog_crawler.config import Settings, settings as default_settings
from catalog_crawler.errors import PolicyDeniedError, SelectorNotFoundError
from catalog_crawler.ingest.fetchers.headless import HeadlessRenderer
from catalog_crawler.ingest.fetchers.static import StaticPageFetcher
from catalog_crawler.ingest.json_extractor import (
    extract_json_ld,
    find_product_json_ld,
    product_fields_from_json_ld,
)
from catalog_crawler.ingest.robots import PolicyCache, PolicyVerdict
from catalog_crawler.logging_config import get_logger, log_operation
from catalog_crawler.normalize.processor import (
    NormalizedProduct,
    PartialProduct,
    merge_layers,
    normalize_product,
)

logger = get_logger(__name__, component="page-extractor")


# Listing containers awaited after a category page loads
LISTING_SELECTORS = [
    ".productGrid",
    ".product-grid",
    ".card",
    ".product",
    "article.product-item",
]

# Anchor strategies for product links, most specific first
PRODUCT_LINK_SELECTORS = [
    ".productGrid .card a[href]",
    ".card a[href]",
    ".product a[href]",
    "article a[href]",
    "a[href]",
]

NEXT_PAGE_SELECTORS = [
    'a[rel="next"]',
    'link[rel="next"]',
    ".pagination-item--next a",
    ".next-page",
    ".pagination-next",
]

TITLE_SELECTORS = ["h1", ".product-title", ".product-name"]

NAME_SELECTORS = [".productView-title", ".product-title", ".product-name", "h1"]
FALLBACK_PRICE_SELECTORS = [".product-price", "[data-price]", ".amount"]
SKU_SELECTORS = [".productView-info-value--sku", ".sku", ".product-sku", "[data-sku]", ".model", ".part-number"]
CATEGORY_SELECTORS = [".breadcrumbs", ".breadcrumb", ".product-category", ".category"]
UNIT_SELECTORS = [".product-unit", ".unit-of-measure", "[data-unit]", ".uom"]
DESCRIPTION_SELECTORS = [
    ".product-description",
    "[itemprop='description']",
    ".productView-description",
    ".description",
    ".product-details",
    ".overview",
    ".tab-content",
]
FEATURE_SELECTORS = ".features ul li, .product-features li, ul.features li, [class*='feature'] li"
GALLERY_SELECTORS = [
    ".productView-images img",
    ".product-gallery img",
    ".product-images img",
    ".product-image img",
    ".main-image img",
    ".product-slider img",
]

# Static pass candidates
STATIC_NAME_SELECTORS = ["h1", ".product-title", ".product-name", "title"]
STATIC_PRICE_SELECTORS = [".price", ".product-price", "[data-price]", "[itemprop='price']", ".amount"]

SINGLE_PRICE_PATTERN = re.compile(r"^\$[\d,]+\.\d{2}$")
CURRENCY_TOKEN_PATTERN = re.compile(r"\$\s?[\d,]+(?:\.\d{2})?")
SKU_LABEL_PATTERN = re.compile(
    r"^(?:sku|model(?:\s*(?:number|no\.?|#))?|part\s*(?:number|no\.?|#)|item\s*#?|mpn)\s*[:#]?\s*",
    re.IGNORECASE,
)
# BigCommerce themes embed listing data as ``var _smbdg_products = [...]``
LISTING_SCRIPT_PATTERN = re.compile(r"var\s+_smbdg_products\s*=\s*(\[[\s\S]*?\]);")

MIN_DESCRIPTION_LENGTH = 50
MIN_FEATURE_LENGTH = 5


@dataclass
class CategoryExtractionResult:
    """Outcome of one category page."""

    success: bool
    product_urls: List[str] = field(default_factory=list)
    next_page_url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ProductExtractionResult:
    """Outcome of one product page."""

    success: bool
    product: Optional[NormalizedProduct] = None
    error: Optional[str] = None


def _text(node: Optional[Node]) -> str:
    if node is None:
        return ""
    return " ".join(node.text(deep=True, separator=" ", strip=True).split())


def _first_text(tree: HTMLParser, selectors: List[str]) -> Optional[str]:
    for selector in selectors:
        text = _text(tree.css_first(selector))
        if text:
            return text
    return None


def _meta(tree: HTMLParser, key: str) -> Optional[str]:
    """Content of a meta tag addressed by property or name."""
    for attr in ("property", "name", "itemprop"):
        node = tree.css_first(f'meta[{attr}="{key}"]')
        if node is not None:
            content = (node.attributes.get("content") or "").strip()
            if content:
                return content
    return None


def _classes(node: Node) -> List[str]:
    return (node.attributes.get("class") or "").split()


def _is_container(node: Node) -> bool:
    """True when the element wraps other price elements."""
    return any(child.mem_id != node.mem_id for child in node.css(".price"))


def find_next_page_url(tree: HTMLParser, base_url: str) -> Optional[str]:
    """Absolute URL of the next listing page, if the page links one."""
    for selector in NEXT_PAGE_SELECTORS:
        node = tree.css_first(selector)
        if node is None:
            continue
        href = node.attributes.get("href")
        if not href:
            anchor = node.css_first("a[href]")
            href = anchor.attributes.get("href") if anchor is not None else None
        if href:
            return urljoin(base_url, href.strip())
    return None


def product_urls_from_listing_script(tree: HTMLParser, base_url: str) -> List[str]:
    """Product URLs from an embedded BigCommerce listing array."""
    urls: List[str] = []
    for script in tree.css("script"):
        content = script.text(deep=True) or ""
        if "_smbdg_products" not in content:
            continue
        match = LISTING_SCRIPT_PATTERN.search(content)
        if not match:
            continue
        try:
            products = json.loads(match.group(1))
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse embedded listing array: {e}")
            continue
        for product in products:
            handle = product.get("handle") if isinstance(product, dict) else None
            if isinstance(handle, str) and handle.strip():
                urls.append(urljoin(base_url, handle.strip()))
        if urls:
            break
    return list(dict.fromkeys(urls))


class PageExtractor:
    """
    Extract product links from category pages and product data from
    product pages.

    Every fetch is gated by the robots policy and followed by the
    politeness delay. A crawl-delay from robots.txt that exceeds the
    configured delay applies to the current call only.
    """

    def __init__(
        self,
        renderer: HeadlessRenderer,
        policy_cache: PolicyCache,
        static_fetcher: Optional[StaticPageFetcher] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.renderer = renderer
        self.policy_cache = policy_cache
        self.static_fetcher = static_fetcher

    async def _pause(self, delay_ms: int) -> None:
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)

    def _effective_delay(self, verdict: Optional[PolicyVerdict]) -> int:
        delay_ms = self.settings.delay_ms
        if verdict and verdict.crawl_delay_ms and verdict.crawl_delay_ms > delay_ms:
            logger.info(
                f"Using robots.txt crawl delay {verdict.crawl_delay_ms}ms (configured {delay_ms}ms)"
            )
            return verdict.crawl_delay_ms
        return delay_ms

    async def _check_policy(self, url: str, kind: str) -> Optional[PolicyVerdict]:
        """
        Consult robots.txt for ``url``.

        Raises:
            PolicyDeniedError: robots.txt disallows the URL
        """
        if not self.settings.respect_robots_txt:
            return None

        verdict = await self.policy_cache.evaluate(url, self.settings.robots_user_agent)
        if not verdict.allowed:
            metrics.record_robots_denial(kind)
            logger.warning(f"Blocked by robots.txt: {url} ({verdict.matched_rule})")
            raise PolicyDeniedError(url, verdict.matched_rule)
        return verdict

    def _is_product_url(self, url: str) -> bool:
        parsed = urlparse(url)
        if parsed.netloc != urlparse(self.settings.site_base_url).netloc:
            return False
        path = parsed.path
        if path in ("", "/") or any(segment in path for segment in self.settings.excluded_path_segments):
            return False
        segments = self.settings.product_path_segments
        return not segments or any(segment in path for segment in segments)

    def _collect_product_urls(self, tree: HTMLParser) -> List[str]:
        base_url = self.settings.site_base_url

        urls = product_urls_from_listing_script(tree, base_url)
        if urls:
            logger.debug(f"Found {len(urls)} products in embedded listing data")
            return urls

        for selector in PRODUCT_LINK_SELECTORS:
            found = []
            for anchor in tree.css(selector):
                href = (anchor.attributes.get("href") or "").strip()
                if not href or href.startswith(("#", "javascript:", "mailto:")):
                    continue
                absolute = urljoin(base_url, href)
                if self._is_product_url(absolute):
                    found.append(absolute)
            if found:
                logger.debug(f"Found {len(found)} product links via '{selector}'")
                return list(dict.fromkeys(found))

        return []

    async def extract_category(self, url: str) -> CategoryExtractionResult:
        """
        Collect product URLs and the next-page link from a category page.

        Failures (policy denial, render errors) are returned, not raised.
        """
        async with log_operation(logger, "extract_category", url=url):
            try:
                verdict = await self._check_policy(url, "category")
            except PolicyDeniedError as e:
                return CategoryExtractionResult(success=False, error=str(e))

            delay_ms = self._effective_delay(verdict)

            try:
                page = await self.renderer.render(url, wait_for=LISTING_SELECTORS, kind="category")
            except Exception as e:
                logger.error(f"Failed to render category page {url}: {e}")
                return CategoryExtractionResult(success=False, error=str(e))

            if not page.wait_satisfied:
                logger.warning(f"Product listing did not appear on {url}, parsing anyway")

            tree = HTMLParser(page.html)
            product_urls = self._collect_product_urls(tree)
            next_page_url = find_next_page_url(tree, self.settings.site_base_url)

            logger.info(
                f"Category page {url}: {len(product_urls)} products, next page: {next_page_url or 'none'}"
            )

            await self._pause(delay_ms)
            return CategoryExtractionResult(
                success=True,
                product_urls=product_urls,
                next_page_url=next_page_url,
            )

    def _structured_layer(self, tree: HTMLParser) -> PartialProduct:
        data = find_product_json_ld(extract_json_ld(tree))
        if not data:
            return PartialProduct()
        return PartialProduct(**product_fields_from_json_ld(data))

    def _meta_layer(self, tree: HTMLParser) -> PartialProduct:
        image = _meta(tree, "og:image")
        return PartialProduct(
            name=_meta(tree, "og:title"),
            price=_meta(tree, "product:price:amount"),
            currency=_meta(tree, "product:price:currency"),
            sku=_meta(tree, "product:sku"),
            brand=_meta(tree, "product:brand"),
            images=[image] if image else [],
        )

    def _dom_price(self, tree: HTMLParser) -> Optional[str]:
        """Sale price first, then any single price, then generic selectors."""
        candidates = tree.css("span.price")
        sale = [n for n in candidates if "price--non-sale" not in _classes(n)]
        for group in (sale, candidates):
            for node in group:
                if _is_container(node):
                    continue
                text = _text(node)
                if SINGLE_PRICE_PATTERN.match(text):
                    return text

        for selector in FALLBACK_PRICE_SELECTORS:
            node = tree.css_first(selector)
            text = _text(node)
            if text and SINGLE_PRICE_PATTERN.match(text):
                return text
            if node is not None and node.attributes.get("data-price"):
                return node.attributes["data-price"]
        return None

    def _dom_sku(self, tree: HTMLParser) -> Optional[str]:
        for selector in SKU_SELECTORS:
            node = tree.css_first(selector)
            if node is None:
                continue
            text = SKU_LABEL_PATTERN.sub("", _text(node)).strip()
            if not text and node.attributes.get("data-sku"):
                text = node.attributes["data-sku"].strip()
            if text:
                return text
        return None

    def _dom_description(self, tree: HTMLParser) -> Optional[str]:
        for selector in DESCRIPTION_SELECTORS:
            text = _text(tree.css_first(selector))
            if len(text) > MIN_DESCRIPTION_LENGTH:
                return text
        return None

    def _dom_specifications(self, tree: HTMLParser) -> Dict[str, str]:
        specs: Dict[str, str] = {}
        for row in tree.css("table tr"):
            cells = [cell for cell in row.iter() if cell.tag in ("td", "th")]
            if len(cells) < 2:
                continue
            key, value = _text(cells[0]), _text(cells[1])
            if key and value:
                specs[key] = value
        return specs

    def _dom_features(self, tree: HTMLParser) -> List[str]:
        features: List[str] = []
        for item in tree.css(FEATURE_SELECTORS):
            text = _text(item)
            if len(text) > MIN_FEATURE_LENGTH and text not in features:
                features.append(text)
        return features

    def _dom_images(self, tree: HTMLParser) -> List[str]:
        images: List[str] = []
        for selector in GALLERY_SELECTORS:
            for img in tree.css(selector):
                src = img.attributes.get("data-src") or img.attributes.get("src")
                if src and src.strip() and not src.startswith("data:"):
                    images.append(src.strip())
        return images

    def _dom_layer(self, tree: HTMLParser) -> PartialProduct:
        return PartialProduct(
            name=_first_text(tree, NAME_SELECTORS),
            price=self._dom_price(tree),
            sku=self._dom_sku(tree),
            category=_first_text(tree, CATEGORY_SELECTORS),
            unit=_first_text(tree, UNIT_SELECTORS),
            description=self._dom_description(tree),
            specifications=self._dom_specifications(tree),
            features=self._dom_features(tree),
            images=self._dom_images(tree),
        )

    async def _static_layer(self, url: str) -> PartialProduct:
        """Name and price from the raw server HTML; errors are logged and ignored."""
        if self.static_fetcher is None:
            return PartialProduct()

        try:
            html = await self.static_fetcher.fetch_html(url)
        except Exception as e:
            logger.warning(f"Static parse pass failed for {url}: {e}")
            return PartialProduct()

        tree = HTMLParser(html)
        name = _first_text(tree, STATIC_NAME_SELECTORS)

        price = None
        for selector in STATIC_PRICE_SELECTORS:
            for node in tree.css(selector):
                match = CURRENCY_TOKEN_PATTERN.search(_text(node))
                if match:
                    price = match.group(0)
                    break
            if price:
                break

        return PartialProduct(name=name, price=price)

    async def _extract_once(self, url: str) -> Tuple[NormalizedProduct, bool]:
        page = await self.renderer.render(url, wait_for=TITLE_SELECTORS, kind="product")
        if not page.wait_satisfied:
            raise SelectorNotFoundError(TITLE_SELECTORS, url)

        tree = HTMLParser(page.html)
        merged = merge_layers(
            self._structured_layer(tree),
            self._meta_layer(tree),
            self._dom_layer(tree),
        )

        if merged.missing("name") or merged.missing("price"):
            merged = merge_layers(merged, await self._static_layer(url))

        if merged.is_empty():
            logger.warning(f"Extraction found no usable data on {url}, storing placeholder")

        product = normalize_product(
            merged,
            url,
            vendor=self.settings.vendor,
            default_currency=self.settings.currency,
            base_url=self.settings.site_base_url,
            max_images=self.settings.max_product_images,
        )
        return product, merged.is_empty()

    async def extract_product(self, url: str) -> ProductExtractionResult:
        """
        Extract one product, retrying transient failures.

        A robots.txt denial fails immediately. Any other error is logged
        with the attempt number, the politeness delay is awaited, and the
        next attempt runs.
        """
        async with log_operation(logger, "extract_product", url=url):
            try:
                verdict = await self._check_policy(url, "product")
            except PolicyDeniedError as e:
                metrics.record_product_extraction("blocked")
                return ProductExtractionResult(success=False, error=str(e))

            delay_ms = self._effective_delay(verdict)
            max_attempts = max(1, self.settings.max_retries)
            last_error: Optional[Exception] = None

            for attempt in range(1, max_attempts + 1):
                try:
                    product, empty = await self._extract_once(url)
                except Exception as e:
                    last_error = e
                    logger.warning(
                        f"Attempt {attempt}/{max_attempts} failed for {url}: {type(e).__name__}: {e}"
                    )
                    if attempt < max_attempts:
                        await self._pause(delay_ms)
                    continue

                metrics.record_product_extraction("empty" if empty else "success")
                await self._pause(delay_ms)
                return ProductExtractionResult(success=True, product=product)

            metrics.record_product_extraction("failed")
            return ProductExtractionResult(
                success=False,
                error=f"Failed after {max_attempts} attempts: {last_error}",
            )
