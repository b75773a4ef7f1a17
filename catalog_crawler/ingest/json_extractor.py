"""Extract product data from embedded JSON-LD in HTML pages."""

import json
import logging
from typing import Any, Dict, List, Optional

from selectolax.parser import HTMLParser

logger = logging.getLogger(__name__)


def extract_json_ld(tree: HTMLParser) -> List[Any]:
    """
    Extract JSON-LD structured data from script tags.

    Returns list of JSON-LD payloads found in the page; blocks that fail
    to parse are skipped.
    """
    results = []
    for script in tree.css('script[type="application/ld+json"]'):
        text = script.text(deep=True)
        if not text or not text.strip():
            continue
        try:
            results.append(json.loads(text))
        except json.JSONDecodeError as e:
            logger.debug(f"Failed to parse JSON-LD block: {e}")
    return results


def _is_type(obj: Dict[str, Any], type_name: str) -> bool:
    obj_type = obj.get("@type", "")
    if isinstance(obj_type, list):
        return type_name in obj_type
    return obj_type == type_name


def _iter_objects(payload: Any):
    """Yield every dict in a payload, descending into lists, @graph and ItemList entries."""
    if isinstance(payload, list):
        for item in payload:
            yield from _iter_objects(item)
    elif isinstance(payload, dict):
        yield payload
        graph = payload.get("@graph")
        if isinstance(graph, (list, dict)):
            yield from _iter_objects(graph)
        elements = payload.get("itemListElement") or []
        if _is_type(payload, "ItemList") and isinstance(elements, list):
            for element in elements:
                if isinstance(element, dict) and isinstance(element.get("item"), dict):
                    yield element["item"]


def find_product_json_ld(payloads: List[Any]) -> Optional[Dict[str, Any]]:
    """Return the first schema.org Product object among JSON-LD payloads."""
    for payload in payloads:
        for obj in _iter_objects(payload):
            if _is_type(obj, "Product"):
                return obj
    return None


def _first_offer(offers: Any) -> Dict[str, Any]:
    if isinstance(offers, list):
        return next((o for o in offers if isinstance(o, dict)), {})
    if isinstance(offers, dict):
        return offers
    return {}


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def product_fields_from_json_ld(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map a schema.org Product object to extractor field names.

    Returns a dict with keys name, sku, price, currency, category,
    description, brand and images (missing values are None / empty).
    """
    offer = _first_offer(data.get("offers"))
    price = offer.get("price")
    if price is None:
        price = offer.get("lowPrice")

    brand = data.get("brand")
    if isinstance(brand, dict):
        brand = brand.get("name")

    images: List[str] = []
    raw_images = data.get("image") or []
    if not isinstance(raw_images, list):
        raw_images = [raw_images]
    for image in raw_images:
        src = image.get("url") if isinstance(image, dict) else image
        if isinstance(src, str) and src.strip():
            images.append(src.strip())

    category = data.get("category")
    if isinstance(category, list):
        category = category[-1] if category else None

    return {
        "name": _text(data.get("name")),
        "sku": _text(data.get("sku") or data.get("mpn")),
        "price": _text(price),
        "currency": _text(offer.get("priceCurrency")),
        "category": _text(category),
        "description": _text(data.get("description")),
        "brand": _text(brand),
        "images": images,
    }
