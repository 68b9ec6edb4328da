"""Variant (SKU) tree parsing for a product page.

The SKU panel lists one group per dimension (color, size, ...) with
`data-vid` value nodes. Purchasable combinations are the cartesian product
of the enabled values of every group.
"""

import itertools
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from playwright.async_api import Page
from selectolax.parser import HTMLParser, Node

from cartwatch.ingest.sku_keys import normalize_sku_properties, variant_key

logger = logging.getLogger(__name__)

DEFAULT_STOCK = 999
PANEL_SELECTOR = '[id*="SkuPanel"]'
GROUP_SELECTORS = '[class*="propItem"],[class*="Property"],[class*="skuItem"],[class*="skuLine"]'
LABEL_SELECTORS = ('[class*="propName"]', '[class*="name"]', "dt", "label")
_DISABLED_CLASS = re.compile(r"disabled|invalid|soldout|out", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


@dataclass
class SkuSelection:
    prop_id: str
    prop_name: str
    value_id: str
    value_name: str

    def to_dict(self) -> dict[str, str]:
        return {
            "prop_id": self.prop_id,
            "prop_name": self.prop_name,
            "value_id": self.value_id,
            "value_name": self.value_name,
        }


@dataclass
class SkuValue:
    value_id: str
    value_name: str
    image_url: Optional[str] = None
    disabled: bool = False


@dataclass
class SkuProperty:
    prop_id: str
    prop_name: str
    values: list[SkuValue] = field(default_factory=list)


@dataclass
class SkuCombination:
    """One purchasable variant."""

    id: str
    properties: str  # "name:value;name:value" as displayed
    selections: list[SkuSelection] = field(default_factory=list)
    stock: int = DEFAULT_STOCK
    image_url: Optional[str] = None

    @property
    def normalized_properties(self) -> str:
        return normalize_sku_properties(self.properties)

    @property
    def key(self) -> str:
        return variant_key(self.id, self.properties)


@dataclass
class SkuTree:
    properties: list[SkuProperty]
    combinations: list[SkuCombination]

    @property
    def total_count(self) -> int:
        return len(self.combinations)


class SkuTreeParser(Protocol):
    async def parse_sku_tree(self, listing_id: str) -> SkuTree: ...


def _clean(text: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def _innermost(nodes: list[Node]) -> list[Node]:
    """Drop candidates that contain another candidate."""
    ids = {node.mem_id for node in nodes}
    ancestors = set()
    for node in nodes:
        parent = node.parent
        while parent is not None:
            if parent.mem_id in ids:
                ancestors.add(parent.mem_id)
            parent = parent.parent
    return [node for node in nodes if node.mem_id not in ancestors]


def _group_label(group: Node, index: int) -> str:
    for selector in LABEL_SELECTORS:
        label = group.css_first(selector)
        if label is None:
            continue
        text = _clean(label.text())
        if text and len(text) <= 40:
            return text.rstrip(":：")
    return f"Option {index + 1}"


def _value_from_node(node: Node) -> Optional[SkuValue]:
    vid = node.attributes.get("data-vid")
    if not vid:
        return None

    classes = node.attributes.get("class") or ""
    disabled = node.attributes.get("data-disabled") == "true" or bool(_DISABLED_CLASS.search(classes))

    img = node.css_first("img")
    name = _clean(node.attributes.get("title")) or _clean(node.text())
    if not name and img is not None:
        name = _clean(img.attributes.get("alt")) or _clean(img.attributes.get("title"))
    if not name:
        return None

    image_url = img.attributes.get("src") if img is not None else None
    if image_url and image_url.startswith("//"):
        image_url = "https:" + image_url
    return SkuValue(value_id=str(vid), value_name=name, image_url=image_url, disabled=disabled)


def parse_sku_panel_html(html: str) -> list[SkuProperty]:
    """Read SKU dimensions and their values from a product page."""
    tree = HTMLParser(html or "")
    panel = tree.css_first(PANEL_SELECTOR)
    if panel is None:
        return []

    groups = [node for node in panel.css(GROUP_SELECTORS) if node.css_first("[data-vid]") is not None]
    if not groups:
        seen = {}
        for item in panel.css("[data-vid]"):
            parent = item.parent
            if parent is not None:
                seen.setdefault(parent.mem_id, parent)
        groups = list(seen.values())
    groups = _innermost(groups)

    properties = []
    for index, group in enumerate(groups):
        values: list[SkuValue] = []
        for node in group.css("[data-vid]"):
            value = _value_from_node(node)
            if value is None or any(v.value_id == value.value_id for v in values):
                continue
            values.append(value)
        if values:
            properties.append(
                SkuProperty(prop_id=f"prop_{index + 1}", prop_name=_group_label(group, index), values=values)
            )
    return properties


def properties_from_sku_base(sku_base: dict[str, Any]) -> list[SkuProperty]:
    """Convert an embedded skuBase JSON structure to properties."""
    properties = []
    for prop in sku_base.get("props") or sku_base.get("properties") or []:
        prop_id = str(prop.get("pid") or prop.get("propId") or prop.get("id") or prop.get("name"))
        values = []
        for value in prop.get("values") or []:
            values.append(
                SkuValue(
                    value_id=str(value.get("vid") or value.get("valueId") or value.get("id")),
                    value_name=value.get("name") or value.get("valueName") or "",
                    image_url=value.get("image") or value.get("imageUrl"),
                    disabled=value.get("disabled") in (True, "true", 1),
                )
            )
        properties.append(SkuProperty(prop_id=prop_id, prop_name=prop.get("name") or "Option", values=values))
    return properties


def generate_combinations(
    properties: list[SkuProperty],
    sku_map: Optional[dict[str, dict]] = None,
) -> list[SkuCombination]:
    """Cartesian product of the enabled values of every dimension."""
    enabled = [[v for v in prop.values if not v.disabled] for prop in properties]
    lookup = {}
    for raw_key, info in (sku_map or {}).items():
        lookup[_sku_map_key(raw_key)] = info

    combinations = []
    for picked in itertools.product(*enabled):
        selections = [
            SkuSelection(
                prop_id=prop.prop_id,
                prop_name=prop.prop_name,
                value_id=value.value_id,
                value_name=value.value_name,
            )
            for prop, value in zip(properties, picked)
        ]
        sku_key = ";".join(f"{s.prop_id}:{s.value_id}" for s in selections)
        info = lookup.get(_sku_map_key(sku_key)) or {}
        stock = info.get("stock", info.get("quantity", DEFAULT_STOCK))
        try:
            stock = int(stock)
        except (TypeError, ValueError):
            stock = DEFAULT_STOCK

        combinations.append(
            SkuCombination(
                id=str(info.get("skuId") or sku_key),
                properties=";".join(f"{s.prop_name}:{s.value_name}" for s in selections),
                selections=selections,
                stock=stock,
                image_url=picked[0].image_url if picked else None,
            )
        )
    return combinations


def _sku_map_key(raw: str) -> str:
    return ";".join(part for part in re.split(r"[;:,]", raw or "") if part)


def single_sku_tree(listing_id: str) -> SkuTree:
    """Listings without a SKU panel have exactly one implicit variant."""
    return SkuTree(
        properties=[],
        combinations=[SkuCombination(id=str(listing_id), properties="default", selections=[])],
    )


# Embedded skuBase / skuData globals on older page layouts
_SKU_GLOBALS_SCRIPT = """
() => {
    const win = window;
    const candidates = [
        win.g_config && win.g_config.skuData,
        win.__INITIAL_STATE__ && win.__INITIAL_STATE__.skuBase,
        win.TB && win.TB.detail && win.TB.detail.data && win.TB.detail.data.skuBase,
    ];
    for (const candidate of candidates) {
        if (candidate && (candidate.props || candidate.properties)) return candidate;
    }
    return null;
}
"""


class PageSkuTreeParser:
    """Parses the SKU tree of the product page currently open in `page`."""

    def __init__(self, page: Page):
        self.page = page

    async def parse_sku_tree(self, listing_id: str) -> SkuTree:
        html = await self.page.content()
        properties = parse_sku_panel_html(html)
        sku_map = None

        if not properties:
            try:
                sku_base = await self.page.evaluate(_SKU_GLOBALS_SCRIPT)
            except Exception as e:
                logger.debug(f"skuBase lookup failed for {listing_id}: {e}")
                sku_base = None
            if sku_base:
                properties = properties_from_sku_base(sku_base)
                sku_map = sku_base.get("skus") if isinstance(sku_base.get("skus"), dict) else None

        if not properties:
            logger.info(f"No SKU dimensions on {listing_id}, treating as single-SKU listing")
            return single_sku_tree(listing_id)

        combinations = generate_combinations(properties, sku_map)
        logger.info(f"Listing {listing_id}: {len(properties)} dimensions, {len(combinations)} combinations")
        return SkuTree(properties=properties, combinations=combinations)
