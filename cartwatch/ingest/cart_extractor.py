"""Cart page extraction.

The page is serialized once with `page.content()` and parsed with
selectolax, so all extraction rules are plain functions over HTML that can
be exercised without a browser.
"""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

from playwright.async_api import Page
from selectolax.parser import HTMLParser, Node

from cartwatch.ingest.sku_keys import cart_item_key, normalize_sku_properties, variant_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartSelectors:
    """CSS selectors for the cart page. Expected to change with site redesigns."""

    item: str = ".trade-cart-item-info"
    title: str = "a.title--dsuLK9IN"
    image: str = "img.image--MC0kGGgi"
    price_block: str = ".trade-cart-item-price"
    price_container: str = ".trade-price-container"
    price_integer: str = ".trade-price-integer"
    price_decimal: str = ".trade-price-decimal"
    sku_block: str = ".trade-cart-item-sku-old"
    sku_label: str = ".label--T4deixnF"
    detail_link: str = 'a[href*="item.taobao.com"], a[href*="detail.tmall.com"]'


DEFAULT_SELECTORS = CartSelectors()

LISTING_ID_PATTERN = re.compile(r"[?&]id=(\d+)")
VARIANT_ID_PATTERN = re.compile(r"[?&]skuId=(\d+)")
# "全部商品 128" / "全部商品(128)" / "购物车(128)"
TOTAL_COUNT_PATTERN = re.compile(r"(?:全部商品|购物车)\s*[（(]?\s*(\d+)\s*[)）]?")
END_MARKER_PATTERN = re.compile(r"没有更多|已经到底|到底了|失效宝贝|失效商品")
_DIGITS = re.compile(r"\d+")


@dataclass
class CartProduct:
    """One cart line item."""

    listing_id: str
    variant_id: str
    sku_properties: str  # Normalized "name:value;..." string
    sku_text: str  # Labels as displayed, space separated
    title: str
    image_url: Optional[str]
    final_price: Decimal
    original_price: Optional[Decimal] = None
    quantity: int = 1
    cart_item_key: str = field(default="")

    def __post_init__(self):
        if not self.cart_item_key:
            self.cart_item_key = cart_item_key(self.listing_id, self.variant_id)

    @property
    def variant_key(self) -> str:
        return variant_key(self.variant_id, self.sku_properties)


def _text(node: Optional[Node]) -> str:
    if node is None:
        return ""
    return (node.text(strip=True) or "").strip()


def _parse_price_pair(container: Node, selectors: CartSelectors) -> Optional[Decimal]:
    """Join the integer and fraction spans of a price ("129" + "90" -> 129.90)."""
    integer_digits = _DIGITS.findall(_text(container.css_first(selectors.price_integer)).replace(",", ""))
    decimal_digits = _DIGITS.findall(_text(container.css_first(selectors.price_decimal)))
    if not integer_digits:
        return None
    integer_part = "".join(integer_digits)
    decimal_part = "".join(decimal_digits) or "0"
    try:
        return Decimal(f"{integer_part}.{decimal_part}")
    except InvalidOperation:
        return None


def normalize_image_url(src: Optional[str]) -> Optional[str]:
    if not src:
        return None
    src = src.strip()
    if src.startswith("//"):
        return "https:" + src
    return src


def parse_cart_item(item: Node, selectors: CartSelectors = DEFAULT_SELECTORS) -> Optional[CartProduct]:
    """Extract one cart line item, or None when it has no listing id."""
    link = item.css_first(selectors.detail_link)
    href = (link.attributes.get("href") or "") if link is not None else ""
    listing_match = LISTING_ID_PATTERN.search(href)
    if not listing_match:
        return None
    variant_match = VARIANT_ID_PATTERN.search(href)

    image = item.css_first(selectors.image)
    image_url = normalize_image_url(image.attributes.get("src") if image is not None else None)

    final_price = Decimal("0")
    original_price = None
    price_block = item.css_first(selectors.price_block)
    containers = price_block.css(selectors.price_container) if price_block is not None else []
    if containers:
        final_price = _parse_price_pair(containers[0], selectors) or Decimal("0")
    if len(containers) > 1:
        original_price = _parse_price_pair(containers[1], selectors)

    labels = []
    sku_block = item.css_first(selectors.sku_block)
    if sku_block is not None:
        labels = [_text(label) for label in sku_block.css(selectors.sku_label)]
        labels = [label for label in labels if label]

    return CartProduct(
        listing_id=listing_match.group(1),
        variant_id=variant_match.group(1) if variant_match else "",
        sku_properties=normalize_sku_properties(";".join(labels)),
        sku_text=" ".join(labels),
        title=_text(item.css_first(selectors.title)),
        image_url=image_url,
        final_price=final_price,
        original_price=original_price,
    )


def parse_cart_html(html: str, selectors: CartSelectors = DEFAULT_SELECTORS) -> list[CartProduct]:
    """Extract all cart line items in DOM order. No dedup, no sorting."""
    tree = HTMLParser(html or "")
    products = []
    for item in tree.css(selectors.item):
        product = parse_cart_item(item, selectors)
        if product is not None:
            products.append(product)
    return products


def parse_cart_total(html: str) -> Optional[int]:
    """Item count the cart UI declares, if shown."""
    tree = HTMLParser(html or "")
    body = tree.body
    text = body.text(separator=" ") if body is not None else ""
    match = TOTAL_COUNT_PATTERN.search(text)
    return int(match.group(1)) if match else None


def has_end_marker(html: str) -> bool:
    """True when the end-of-list section has been rendered."""
    tree = HTMLParser(html or "")
    body = tree.body
    text = body.text(separator=" ") if body is not None else ""
    return bool(END_MARKER_PATTERN.search(text))


class CartExtractor:
    """Reads cart line items from a live page."""

    def __init__(self, selectors: CartSelectors = DEFAULT_SELECTORS):
        self.selectors = selectors

    async def extract(self, page: Page) -> list[CartProduct]:
        html = await page.content()
        products = parse_cart_html(html, self.selectors)
        logger.debug(f"Extracted {len(products)} cart items from {page.url}")
        return products

    async def extract_with_total(self, page: Page) -> tuple[list[CartProduct], Optional[int]]:
        html = await page.content()
        return parse_cart_html(html, self.selectors), parse_cart_total(html)


# Global cart extractor instance
cart_extractor = CartExtractor()
