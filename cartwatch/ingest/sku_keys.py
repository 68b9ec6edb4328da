"""Variant key normalization.

Cart entries, snapshot variants and SKU tree combinations are matched by a
single key: the numeric variant id when there is one, otherwise the
normalized property string. Normalization is order-insensitive so
"color:red;size:M" and "Size:M; color:Red" produce the same key.
"""

import re
from typing import Optional

BASE_VARIANT_KEY = "__BASE__"

_WHITESPACE = re.compile(r"\s+")
_SEPARATORS = re.compile(r"[;；]")
_PAIR_SEPARATOR = re.compile(r"[:：]")
_NUMERIC_ID = re.compile(r"^\d+$")


def normalize_sku_properties(raw: Optional[str]) -> str:
    """Normalize a "name:value;name:value" property string.

    Collapses whitespace, folds case, accepts full-width separators,
    drops empty segments and sorts the pairs by name.
    """
    if not raw:
        return ""

    text = _WHITESPACE.sub(" ", str(raw)).strip()
    pairs = []
    for segment in _SEPARATORS.split(text):
        segment = segment.strip()
        if not segment:
            continue
        parts = _PAIR_SEPARATOR.split(segment, maxsplit=1)
        if len(parts) == 2:
            name, value = parts[0].strip().casefold(), parts[1].strip().casefold()
            pairs.append((name, f"{name}:{value}"))
        else:
            value = segment.casefold()
            pairs.append(("", value))

    pairs.sort()
    return ";".join(normalized for _, normalized in pairs)


def is_numeric_id(value: Optional[str]) -> bool:
    return bool(value) and bool(_NUMERIC_ID.match(str(value).strip()))


def variant_key(variant_id: Optional[str], sku_properties: Optional[str]) -> str:
    """Stable matching key: numeric variant id, else normalized properties."""
    if is_numeric_id(variant_id):
        return str(variant_id).strip()
    return normalize_sku_properties(sku_properties)


def cart_item_key(listing_id: str, variant_id: Optional[str]) -> str:
    return f"{listing_id}_{variant_id or ''}"


def selections_vid_path(selections) -> str:
    """Join the value ids of a selection list ("1627207:28320;20509:28314")."""
    vids = []
    for selection in selections or []:
        value_id = selection.get("value_id") if isinstance(selection, dict) else getattr(selection, "value_id", None)
        if value_id:
            vids.append(str(value_id))
    return ";".join(vids)
