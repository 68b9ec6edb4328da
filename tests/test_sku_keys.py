"""Tests for variant key normalization."""

from cartwatch.ingest.sku_keys import (
    cart_item_key,
    is_numeric_id,
    normalize_sku_properties,
    selections_vid_path,
    variant_key,
)


def test_property_order_does_not_matter():
    assert normalize_sku_properties("color:red;size:m") == normalize_sku_properties("size:m;color:red")


def test_case_whitespace_and_fullwidth_separators():
    assert normalize_sku_properties(" Color：Red ； Size : M ") == "color:red;size:m"


def test_empty_segments_dropped():
    assert normalize_sku_properties(";;color:red;;") == "color:red"
    assert normalize_sku_properties("") == ""
    assert normalize_sku_properties(None) == ""


def test_numeric_variant_id_wins():
    assert variant_key("5012345", "color:red") == "5012345"
    assert variant_key(" 5012345 ", None) == "5012345"


def test_non_numeric_id_falls_back_to_properties():
    assert variant_key("prop_1:11", "Size:M;Color:Red") == "color:red;size:m"
    assert variant_key("", "Size:M;Color:Red") == "color:red;size:m"
    assert not is_numeric_id("12a")


def test_cart_item_key():
    assert cart_item_key("600100", "5012345") == "600100_5012345"
    assert cart_item_key("600100", "") == "600100_"


def test_vid_path_accepts_dicts():
    selections = [{"value_id": "11"}, {"value_id": "21"}, {"value_id": ""}]
    assert selections_vid_path(selections) == "11;21"
