"""Fold layered extraction results into canonical product records."""

import logging
import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, List, Optional
from urllib.parse import urljoin, urlparse

logger = logging.getLogger(__name__)

UNKNOWN_PRODUCT_NAME = "Unknown Product"
MAX_ID_LENGTH = 100

IMAGE_EXTENSION_PATTERN = re.compile(r"\.(jpg|jpeg|png|webp|avif)(\?|$)", re.IGNORECASE)
NON_PRODUCT_IMAGE_WORDS = ("logo", "icon", "badge", "banner", "social")


class ProductUnit(str, Enum):
    """Unit of sale."""

    EACH = "each"
    FOOT = "foot"
    PACK = "pack"


@dataclass(frozen=True)
class PartialProduct:
    """
    Raw field candidates from one extraction layer.

    Every field is optional; an empty string, empty list or empty dict
    counts as missing when layers are merged.
    """

    name: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[str] = None
    currency: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    images: List[str] = field(default_factory=list)
    specifications: Dict[str, str] = field(default_factory=dict)
    features: List[str] = field(default_factory=list)

    def missing(self, field_name: str) -> bool:
        return _is_empty(getattr(self, field_name))

    def is_empty(self) -> bool:
        """True when neither a name nor a price was found."""
        return self.missing("name") and self.missing("price")


def _is_empty(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def merge_layers(*layers: PartialProduct) -> PartialProduct:
    """
    Combine layers in priority order, first non-empty value per field wins.

    ``images`` are the exception: they are concatenated across layers
    (deduplicated) because every source contributes candidates.
    """
    merged = PartialProduct()
    for layer in layers:
        updates = {}
        for f in fields(PartialProduct):
            if f.name == "images":
                continue
            if merged.missing(f.name) and not layer.missing(f.name):
                updates[f.name] = getattr(layer, f.name)
        if updates:
            merged = replace(merged, **updates)

    images: List[str] = []
    for layer in layers:
        for image in layer.images:
            if image not in images:
                images.append(image)
    return replace(merged, images=images)


@dataclass
class NormalizedProduct:
    """Canonical product record handed to storage."""

    id: str
    name: str
    sku: Optional[str]
    vendor: str
    brand: Optional[str]
    category: Optional[str]
    unit: ProductUnit
    price: Optional[Decimal]
    currency: str
    url: Optional[str]
    image_urls: List[str] = field(default_factory=list)
    description: Optional[str] = None
    specifications: Dict[str, str] = field(default_factory=dict)
    features: List[str] = field(default_factory=list)
    is_active: bool = False
    last_updated: datetime = None

    def __post_init__(self):
        if self.last_updated is None:
            self.last_updated = datetime.utcnow()

    @property
    def primary_image_url(self) -> Optional[str]:
        return self.image_urls[0] if self.image_urls else None


def slugify_name(name: str) -> str:
    """Lower-case, drop non-alphanumerics, join words with dashes."""
    slug = re.sub(r"[^a-z0-9\s]", "", name.lower())
    return re.sub(r"\s+", "-", slug.strip())


def url_slug(url: str) -> str:
    """Final non-empty path segment of a URL, without an .htm(l) suffix."""
    segments = [s for s in urlparse(url).path.split("/") if s]
    if not segments:
        return ""
    return re.sub(r"\.html?$", "", segments[-1])


def generate_product_id(sku: Optional[str], name: str, url: Optional[str] = None) -> str:
    """
    Derive the stable upsert key for a product.

    SKU wins when present; otherwise the name slug joined with the URL
    slug, or the name slug alone without a URL.
    """
    if sku and sku.strip():
        product_id = re.sub(r"[^a-z0-9]", "-", sku.strip().lower())
        return product_id[:MAX_ID_LENGTH]

    name_slug = slugify_name(name)
    if url:
        return f"{name_slug}-{url_slug(url)}"[:MAX_ID_LENGTH]
    return name_slug[:MAX_ID_LENGTH]


def parse_price(price_text: Optional[str]) -> Decimal:
    """
    Parse price text such as "$1,299.00" into a Decimal.

    Everything except digits and dots is stripped. Malformed leftovers
    (e.g. several dots) parse up to the first invalid character; text
    with no number yields 0.
    """
    if price_text is None:
        return Decimal("0")

    cleaned = re.sub(r"[^0-9.]", "", str(price_text))
    if not cleaned:
        return Decimal("0")

    try:
        return Decimal(cleaned)
    except InvalidOperation:
        pass

    match = re.match(r"\d*\.?\d+", cleaned)
    if match:
        try:
            return Decimal(match.group(0))
        except InvalidOperation:
            pass
    return Decimal("0")


def normalize_unit(unit: Optional[str]) -> ProductUnit:
    """Map free-text unit descriptions to a ProductUnit."""
    if not unit:
        return ProductUnit.EACH

    normalized = unit.lower().strip()
    if "ft" in normalized or "foot" in normalized or "feet" in normalized:
        return ProductUnit.FOOT
    if "pack" in normalized or "pkg" in normalized:
        return ProductUnit.PACK
    return ProductUnit.EACH


def filter_image_urls(urls: List[str], base_url: str, limit: int = 5) -> List[str]:
    """Drop non-product images, make URLs absolute and cap the list."""
    result: List[str] = []
    for url in urls:
        lowered = url.lower()
        if any(word in lowered for word in NON_PRODUCT_IMAGE_WORDS):
            continue
        if not IMAGE_EXTENSION_PATTERN.search(lowered):
            continue

        if url.startswith("//"):
            absolute = f"https:{url}"
        else:
            absolute = urljoin(base_url, url)

        if absolute not in result:
            result.append(absolute)
        if len(result) >= limit:
            break
    return result


def normalize_product(
    partial: PartialProduct,
    url: Optional[str],
    vendor: str,
    default_currency: str = "USD",
    base_url: Optional[str] = None,
    max_images: int = 5,
) -> NormalizedProduct:
    """
    Build the canonical record from merged field candidates.

    Never raises on missing data: an empty name becomes
    "Unknown Product" and an unparseable price becomes 0.
    """
    name = (partial.name or "").strip() or UNKNOWN_PRODUCT_NAME
    sku = (partial.sku or "").strip() or None
    price = parse_price(partial.price)
    category = (partial.category or "").strip() or None
    description = (partial.description or "").strip() or None
    brand = (partial.brand or "").strip() or None
    currency = (partial.currency or "").strip().upper() or default_currency

    return NormalizedProduct(
        id=generate_product_id(sku, name, url),
        name=name,
        sku=sku,
        vendor=vendor,
        brand=brand,
        category=category,
        unit=normalize_unit(partial.unit),
        price=price,
        currency=currency,
        url=url,
        image_urls=filter_image_urls(partial.images, base_url or url or "", max_images),
        description=description,
        specifications=dict(partial.specifications),
        features=list(partial.features),
        is_active=price > 0,
    )
