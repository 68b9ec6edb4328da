"""Tests for the text rules behind the page adapter."""

from types import SimpleNamespace

import pytest

from cartwatch.ingest.errors import CaptchaRequiredError, LoginRequiredError
from cartwatch.ingest.page_adapter import (
    SUCCESS_TEXT_PATTERN,
    PlaywrightPageAdapter,
    classify_failure_text,
    detect_auth_challenge,
    listing_id_from_url,
    parse_count,
)


@pytest.mark.parametrize(
    "text,reason",
    [
        ("请选择您要的颜色分类", "incomplete selection"),
        ("该规格库存不足", "insufficient stock"),
        ("操作太频繁，请稍后再试", "rate limited"),
        ("请先登录", "authentication challenge"),
        ("宝贝已下架", "listing unavailable"),
        ("", None),
        ("一切正常", None),
    ],
)
def test_failure_reason_rules(text, reason):
    assert classify_failure_text(text) == reason


def test_failure_rules_are_ordered():
    # Selection prompts win over stock wording in the same toast
    assert classify_failure_text("请选择尺码 库存不足") == "incomplete selection"


def test_login_redirect_is_login_required():
    error = detect_auth_challenge("https://login.taobao.com/member/login.jhtml?redirect=cart", stage="open cart")
    assert isinstance(error, LoginRequiredError)
    assert error.status == "LOCKED"
    assert "open cart" in str(error)


def test_slider_page_is_captcha():
    error = detect_auth_challenge("https://item.taobao.com/item.htm?id=1", body_text="请拖动滑块完成安全验证")
    assert isinstance(error, CaptchaRequiredError)
    assert error.status == "CAPTCHA"


def test_regular_page_has_no_challenge():
    assert detect_auth_challenge("https://cart.taobao.com/cart.htm", title="我的购物车", body_text="全部商品 3") is None


def test_success_pattern():
    assert SUCCESS_TEXT_PATTERN.search("成功加入购物车")


def test_parse_count():
    assert parse_count(" 12 ") == 12
    assert parse_count("99+") == 99
    assert parse_count("") is None


@pytest.mark.parametrize(
    "url,listing_id",
    [
        ("https://item.taobao.com/item.htm?id=600100", "600100"),
        ("https://detail.tmall.com/item.htm?spm=a1z10&id=600100&skuId=5001", "600100"),
        ("https://item.taobao.com/item.htm?id=6001001", "6001001"),
        ("https://item.taobao.com/item.htm?skuId=600100", None),
        ("about:blank", None),
        (None, None),
    ],
)
def test_listing_id_from_url(url, listing_id):
    assert listing_id_from_url(url) == listing_id


class StopNavigation(Exception):
    pass


class RecordingHuman:
    def __init__(self):
        self.visited = []

    async def navigate(self, url, timeout_ms=None):
        self.visited.append(url)
        raise StopNavigation(url)


def adapter_on(url):
    session = SimpleNamespace(page=SimpleNamespace(url=url), human=RecordingHuman())
    return PlaywrightPageAdapter(session), session.human


@pytest.mark.asyncio
async def test_goto_product_stays_on_same_listing():
    adapter, human = adapter_on("https://item.taobao.com/item.htm?id=600100&skuId=5001")
    await adapter.goto_product("600100")
    assert human.visited == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "current",
    [
        "https://item.taobao.com/item.htm?id=6001001",
        "https://item.taobao.com/item.htm?id=1600100",
        "https://cart.taobao.com/cart.htm?from=item&ref=id=600100",
    ],
)
async def test_goto_product_leaves_other_listing(current):
    adapter, human = adapter_on(current)
    with pytest.raises(StopNavigation):
        await adapter.goto_product("600100")
    assert human.visited == [adapter.product_url("600100")]
