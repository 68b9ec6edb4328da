"""DOM heuristics for product and cart pages.

Everything the acquisition engine needs to know about the site's markup
lives here, behind the `PageAdapter` protocol. The text rules (auth
detection, success toast, rejection reasons) are module-level tables so
they can be checked without a browser.
"""

import asyncio
import json
import logging
import random
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Optional, Protocol
from urllib.parse import parse_qs, urlparse

from playwright.async_api import Locator, Page, TimeoutError as PlaywrightTimeoutError

from cartwatch.config import settings
from cartwatch.ingest.cart_extractor import (
    CartProduct,
    cart_extractor,
    has_end_marker,
    parse_cart_html,
    parse_cart_total,
)
from cartwatch.ingest.errors import AuthChallengeError, CaptchaRequiredError, LoginRequiredError
from cartwatch.ingest.human import random_sleep
from cartwatch.ingest.session_manager import BrowserSession
from cartwatch.ingest.sku_tree import SkuSelection

logger = logging.getLogger(__name__)

# ==========================================================================
# Text rules
# ==========================================================================

AUTH_URL_PATTERN = re.compile(
    r"login\.taobao\.com|login\.tmall\.com|passport\.taobao\.com|sec\.taobao\.com|captcha|verify|risk",
    re.IGNORECASE,
)
LOGIN_URL_PATTERN = re.compile(r"login\.taobao\.com|login\.tmall\.com|passport\.taobao\.com", re.IGNORECASE)
AUTH_TITLE_PATTERN = re.compile(r"登录|Login|安全验证|验证码")
SITE_URL_PATTERN = re.compile(r"taobao|tmall|alibaba", re.IGNORECASE)
LOGIN_BODY_PATTERN = re.compile(r"扫码登录|密码登录|短信登录|请先登录")
CHALLENGE_BODY_PATTERN = re.compile(r"安全验证|验证码|滑块")

SUCCESS_TEXT_PATTERN = re.compile(
    r"成功(加入|添加|放入).{0,6}购物车|已(加入|添加|放入).{0,6}购物车|加入购物车成功|已放入购物车"
)

# Checked in order; the first match names the rejection
FAILURE_REASON_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"(请选择|请先选择|请选择您要的).*(规格|属性|颜色|尺码|尺寸|型号|版本|套餐|款式)"), "incomplete selection"),
    (re.compile(r"库存不足|已售罄|无货|补货|暂时缺货"), "insufficient stock"),
    (re.compile(r"操作太频繁|系统繁忙|休息一下|太火爆|请稍后再试"), "rate limited"),
    (re.compile(r"请先登录|重新登录|登录失效|扫码登录|密码登录|安全验证|验证码|滑块"), "authentication challenge"),
    (re.compile(r"下架|不存在|失效|已删除|已结束"), "listing unavailable"),
]


def classify_failure_text(text: Optional[str]) -> Optional[str]:
    """Map visible page/toast text to a rejection reason."""
    if not text:
        return None
    for pattern, reason in FAILURE_REASON_RULES:
        if pattern.search(text):
            return reason
    return None


def detect_auth_challenge(url: str, title: str = "", body_text: str = "", stage: str = "") -> Optional[AuthChallengeError]:
    """Return the challenge error a page state represents, or None."""
    where = f" ({stage})" if stage else ""
    if AUTH_URL_PATTERN.search(url or ""):
        if LOGIN_URL_PATTERN.search(url):
            return LoginRequiredError(f"Login required{where}: {url}", url=url)
        return CaptchaRequiredError(f"Verification required{where}: {url}", url=url)
    if title and AUTH_TITLE_PATTERN.search(title) and SITE_URL_PATTERN.search(url or ""):
        if re.search(r"登录|Login", title):
            return LoginRequiredError(f"Login required{where}: {url}", url=url)
        return CaptchaRequiredError(f"Verification required{where}: {url}", url=url)
    if body_text:
        if LOGIN_BODY_PATTERN.search(body_text):
            return LoginRequiredError(f"Login required{where}: {url}", url=url)
        if CHALLENGE_BODY_PATTERN.search(body_text):
            return CaptchaRequiredError(f"Verification required{where}: {url}", url=url)
    return None


def parse_count(text: Optional[str]) -> Optional[int]:
    digits = re.sub(r"[^\d]", "", text or "")
    return int(digits) if digits else None


def listing_id_from_url(url: Optional[str]) -> Optional[str]:
    """The `id` query parameter of a product page URL."""
    values = parse_qs(urlparse(url or "").query).get("id")
    return values[0] if values else None


# ==========================================================================
# Selectors
# ==========================================================================

SKU_PANEL = '[id*="SkuPanel"]'
OPTION_SELECTOR_TEMPLATES = [
    '[data-vid="{vid}"][class*="valueItem"]',
    '[data-vid="{vid}"]',
    '[data-value="{vid}"]',
    '[data-id="{vid}"]',
    '[data-sku-value="{vid}"]',
]
ADD_TO_CART_SELECTORS = [
    '[class*="btnItem"]:has([class*="icon-taobaojiarugouwuche"])',
    'button:has-text("加入购物车")',
    'a:has-text("加入购物车")',
    ".addcart-btn",
    ".add-cart-btn",
    'button[class*="AddCart"]',
]
MINI_CART_COUNT_SELECTORS = ["#J_MiniCartNum", '[id*="MiniCartNum"]']
OVERLAY_SELECTOR = (
    '.CommonMask--UmpuIa8a, [class*="mask" i], [class*="overlay" i], '
    '[class*="Mask"], [class*="Modal"], [class*="modal" i]'
)
TOAST_SELECTORS = [
    '[role="alert"]',
    '[class*="toast"]',
    '[class*="message"]',
    '[class*="notice"]',
    ".ant-message",
    ".next-message",
]
CLOSE_BUTTON_SELECTORS = [
    'button:has-text("继续购物")',
    'a:has-text("继续购物")',
    'button:has-text("再逛逛")',
    'button:has-text("知道了")',
    ".CommonMask--UmpuIa8a [class*='close']",
    '[class*="icon-guanbi"]',
    'button[class*="close"]',
    '[aria-label="关闭"]',
    '[title="关闭"]',
    '[class*="Dialog"] [class*="close"]',
    '[class*="Modal"] [class*="close"]',
]

# Selected state can sit on the value node, its clickable wrapper, or up to
# four ancestors above it
_SELECTED_STATE_JS = """
(vid) => {
    const panel = document.querySelector('[id*="SkuPanel"]');
    if (!panel) return %(no_panel)s;
    const nodes = Array.from(panel.querySelectorAll(
        `[data-vid="${vid}"], [data-value="${vid}"], [data-id="${vid}"], [data-sku-value="${vid}"]`));
    if (nodes.length === 0) return false;
    const selectedAttr = (el) => !!el && ['aria-selected', 'aria-checked', 'aria-pressed', 'data-selected']
        .some((name) => el.getAttribute(name) === 'true');
    const selectedClass = (el) => !!el &&
        /selected|active|checked|isSelected|chosen|current/i.test(String(el.getAttribute('class') || ''));
    for (const node of nodes) {
        const target = node.closest('button,a,[role="button"]') || node.closest('[class*="valueItem"]')
            || node.closest('[class*="sku"]') || node;
        if (selectedAttr(node) || selectedAttr(target) || selectedClass(node) || selectedClass(target)) return true;
        let cur = target;
        for (let i = 0; i < 4 && cur; i++) {
            if (selectedAttr(cur) || selectedClass(cur)) return true;
            cur = cur.parentElement;
        }
    }
    return false;
}
"""
IS_SELECTED_JS = _SELECTED_STATE_JS % {"no_panel": "false"}
WAIT_SELECTED_JS = _SELECTED_STATE_JS % {"no_panel": "true"}

MISSING_DIMENSIONS_JS = """
() => {
    const panel = document.querySelector('[id*="SkuPanel"]');
    if (!panel) return [];
    const norm = (s) => String(s || '').replace(/\\s+/g, ' ').trim();
    const groups = Array.from(panel.querySelectorAll(
        '[class*="propItem"],[class*="Property"],[class*="skuItem"],[class*="skuLine"],dl'))
        .filter((el) => el.querySelector('[data-vid]'));
    const selectedAttr = (el) => !!el && ['aria-selected', 'aria-checked', 'aria-pressed', 'data-selected']
        .some((name) => el.getAttribute(name) === 'true');
    const selectedClass = (el) => !!el &&
        /selected|active|checked|isSelected|chosen|current/i.test(String(el.getAttribute('class') || ''));
    const isSelected = (el) => {
        const target = el.closest('button,a,[role="button"]') || el.closest('[class*="valueItem"]')
            || el.closest('[class*="sku"]') || el;
        if (selectedAttr(el) || selectedAttr(target) || selectedClass(el) || selectedClass(target)) return true;
        let cur = target;
        for (let i = 0; i < 4 && cur; i++) {
            if (selectedAttr(cur) || selectedClass(cur)) return true;
            cur = cur.parentElement;
        }
        return false;
    };
    const missing = [];
    groups.forEach((group, idx) => {
        const labelEl = group.querySelector('[class*="propName"]') || group.querySelector('[class*="name"]')
            || group.querySelector('dt') || group.querySelector('label');
        const label = norm(labelEl && labelEl.textContent) || `Option ${idx + 1}`;
        const values = Array.from(group.querySelectorAll('[data-vid]'));
        if (!values.some(isSelected)) missing.push(label);
    });
    return Array.from(new Set(missing));
}
"""

CART_COUNT_INCREASED_JS = """
(prev) => {
    const read = (sel) => {
        const el = document.querySelector(sel);
        if (!el) return null;
        const digits = (el.textContent || '').replace(/[^\\d]/g, '');
        return digits ? parseInt(digits, 10) : null;
    };
    const current = read('#J_MiniCartNum') ?? read('[id*="MiniCartNum"]');
    return current != null && current > prev;
}
"""


@dataclass
class CartScanState:
    """One observation while scrolling through the cart."""

    scroll_y: float
    products: list[CartProduct]
    ui_total: Optional[int]
    end_visible: bool


class PageAdapter(Protocol):
    """Page operations used by SKU acquisition."""

    async def goto_product(self, listing_id: str) -> None: ...
    async def reset_to_product(self, listing_id: str) -> None: ...
    async def goto_cart(self) -> None: ...
    async def reload_cart(self) -> None: ...
    async def assert_not_auth_page(self, stage: str) -> None: ...
    async def dismiss_obstructions(self) -> None: ...
    async def browse_product(self) -> None: ...
    async def locate_option(self, selection: SkuSelection) -> Optional[Any]: ...
    async def is_option_disabled(self, option: Any) -> bool: ...
    async def is_option_selected(self, selection: SkuSelection) -> bool: ...
    async def click_option(self, option: Any) -> None: ...
    async def wait_option_selected(self, selection: SkuSelection, timeout_ms: int) -> bool: ...
    async def missing_dimensions(self) -> list[str]: ...
    async def find_add_to_cart(self) -> Optional[Any]: ...
    async def is_add_to_cart_disabled(self, control: Any) -> bool: ...
    async def read_cart_count(self) -> Optional[int]: ...
    async def click_add_to_cart(self, control: Any) -> None: ...
    async def detect_success_signal(self, before_count: Optional[int], timeout_ms: int) -> bool: ...
    async def read_failure_reason(self) -> Optional[str]: ...
    async def dismiss_add_confirmation(self) -> None: ...
    async def read_cart_scan_state(self) -> CartScanState: ...
    async def extract_cart(self) -> tuple[list[CartProduct], Optional[int]]: ...
    async def scroll_cart(self, distance: int) -> None: ...
    async def save_debug_artifacts(self, tag: str, meta: dict[str, Any]) -> None: ...


async def _quiet(awaitable: Awaitable, default=None):
    """Await a best-effort page read, returning `default` on any page error."""
    try:
        return await awaitable
    except Exception as e:
        logger.debug(f"Page read failed: {e}")
        return default


class PlaywrightPageAdapter:
    """PageAdapter over an account's live BrowserSession."""

    def __init__(self, session: BrowserSession):
        self.session = session

    @property
    def page(self) -> Page:
        return self.session.page

    @property
    def human(self):
        return self.session.human

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def product_url(self, listing_id: str) -> str:
        return settings.product_url_template.format(listing_id=listing_id)

    async def goto_product(self, listing_id: str) -> None:
        if listing_id_from_url(self.page.url) == str(listing_id):
            return
        await self.human.navigate(self.product_url(listing_id))
        await self.assert_not_auth_page("open product page")
        await self.dismiss_obstructions()

    async def reset_to_product(self, listing_id: str) -> None:
        await _quiet(
            self.page.goto(
                self.product_url(listing_id),
                wait_until="domcontentloaded",
                timeout=settings.navigation_timeout_ms,
            )
        )
        await self.dismiss_add_confirmation()
        await self.dismiss_obstructions()

    async def goto_cart(self) -> None:
        if "cart.htm" in (self.page.url or ""):
            return
        await self.human.navigate(settings.cart_url)
        await self.assert_not_auth_page("open cart")
        await random_sleep(800, 1600)
        await self.dismiss_obstructions()

    async def reload_cart(self) -> None:
        if "cart.htm" not in (self.page.url or ""):
            await self.human.navigate(settings.cart_url)
        else:
            try:
                await self.page.reload(wait_until="domcontentloaded", timeout=settings.navigation_timeout_ms)
            except PlaywrightTimeoutError:
                await self.page.goto(
                    settings.cart_url,
                    wait_until="domcontentloaded",
                    timeout=settings.navigation_timeout_ms,
                )
        await random_sleep(1200, 2400)
        await self.assert_not_auth_page("refresh cart")
        await self.human.occasional_wander()
        if random.random() < 0.6:
            await self.human.smooth_scroll(random.randint(120, 360))
            if random.random() < 0.35:
                await self.human.smooth_scroll(-random.randint(80, 220))
        await self.dismiss_obstructions()
        await random_sleep(600, 1200)

    async def assert_not_auth_page(self, stage: str) -> None:
        url = self.page.url or ""
        title = await _quiet(self.page.title(), "")
        body = await _quiet(self.page.locator("body").inner_text(timeout=1500), "")
        challenge = detect_auth_challenge(url, title, body, stage)
        if challenge is not None:
            raise challenge

    async def dismiss_obstructions(self) -> None:
        """Close feature tips and masks that sit over the SKU panel."""
        await _quiet(self.page.keyboard.press("Escape"))
        for selector in ('button:has-text("知道了")', 'button:has-text("我知道了")'):
            tip = self.page.locator(selector).first
            if await _quiet(tip.is_visible(), False):
                await _quiet(tip.click(timeout=1500))
        await _quiet(self.page.wait_for_selector(OVERLAY_SELECTOR, state="hidden", timeout=3000))

    async def browse_product(self) -> None:
        await self.human.browse()
        await _quiet(self.page.evaluate("() => window.scrollTo({top: 0, behavior: 'smooth'})"))
        await random_sleep(250, 600)

    # ------------------------------------------------------------------
    # Options
    # ------------------------------------------------------------------

    async def locate_option(self, selection: SkuSelection) -> Optional[Locator]:
        panel = self.page.locator(SKU_PANEL).first
        for template in OPTION_SELECTOR_TEMPLATES:
            candidate = panel.locator(template.format(vid=selection.value_id)).first
            if await _quiet(candidate.is_visible(), False):
                return candidate
        by_text = panel.get_by_text(selection.value_name, exact=True).first
        if await _quiet(by_text.is_visible(), False):
            return by_text
        return None

    async def is_option_disabled(self, option: Locator) -> bool:
        return bool(
            await _quiet(
                option.evaluate(
                    "(el) => el.getAttribute('data-disabled') === 'true'"
                    " || el.getAttribute('aria-disabled') === 'true' || Boolean(el.disabled)"
                ),
                False,
            )
        )

    async def is_option_selected(self, selection: SkuSelection) -> bool:
        return bool(await _quiet(self.page.evaluate(IS_SELECTED_JS, selection.value_id), False))

    async def click_option(self, option: Locator) -> None:
        if not await _quiet(self.human.click(option), False):
            await _quiet(option.click(timeout=1500))
        await random_sleep(150, 360)

    async def wait_option_selected(self, selection: SkuSelection, timeout_ms: int) -> bool:
        try:
            await self.page.wait_for_function(WAIT_SELECTED_JS, arg=selection.value_id, timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    async def missing_dimensions(self) -> list[str]:
        return list(await _quiet(self.page.evaluate(MISSING_DIMENSIONS_JS), []) or [])

    # ------------------------------------------------------------------
    # Add to cart
    # ------------------------------------------------------------------

    async def find_add_to_cart(self) -> Optional[Locator]:
        for selector in ADD_TO_CART_SELECTORS:
            candidate = self.page.locator(selector).first
            if await _quiet(candidate.is_visible(), False):
                return candidate
        return None

    async def is_add_to_cart_disabled(self, control: Locator) -> bool:
        return bool(
            await _quiet(
                control.evaluate("(el) => Boolean(el.disabled) || el.getAttribute('aria-disabled') === 'true'"),
                False,
            )
        )

    async def read_cart_count(self) -> Optional[int]:
        for selector in MINI_CART_COUNT_SELECTORS:
            text = await _quiet(self.page.locator(selector).first.text_content(timeout=1000))
            count = parse_count(text)
            if count is not None:
                return count
        return None

    async def click_add_to_cart(self, control: Locator) -> None:
        await _quiet(control.scroll_into_view_if_needed(timeout=2000))
        await random_sleep(200, 500)
        if not await _quiet(self.human.click(control), False):
            await control.click(timeout=1500)

    async def detect_success_signal(self, before_count: Optional[int], timeout_ms: int) -> bool:
        """Race the success toast against a cart-count increase."""
        waiters = [
            asyncio.ensure_future(
                self.page.get_by_text(SUCCESS_TEXT_PATTERN).first.wait_for(state="visible", timeout=timeout_ms)
            )
        ]
        if before_count is not None:
            waiters.append(
                asyncio.ensure_future(
                    self.page.wait_for_function(CART_COUNT_INCREASED_JS, arg=before_count, timeout=timeout_ms)
                )
            )

        succeeded = False
        pending = set(waiters)
        try:
            while pending and not succeeded:
                done, pending = await asyncio.wait(
                    pending, timeout=timeout_ms / 1000 + 1, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    break
                succeeded = any(not task.cancelled() and task.exception() is None for task in done)
        finally:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        return succeeded

    async def read_failure_reason(self) -> Optional[str]:
        texts = [await _quiet(self.page.locator("body").inner_text(timeout=1500), "")]
        for selector in TOAST_SELECTORS:
            texts.append(await _quiet(self.page.locator(selector).first.inner_text(timeout=800), ""))
        return classify_failure_text("\n".join(t for t in texts if t))

    async def dismiss_add_confirmation(self) -> None:
        for selector in CLOSE_BUTTON_SELECTORS:
            button = self.page.locator(selector).first
            if await _quiet(button.is_visible(), False):
                await _quiet(button.click(timeout=3000))
                await random_sleep(250, 600)
                break
        await _quiet(self.page.wait_for_selector(OVERLAY_SELECTOR, state="hidden", timeout=3000))

    # ------------------------------------------------------------------
    # Cart scanning
    # ------------------------------------------------------------------

    async def read_cart_scan_state(self) -> CartScanState:
        html = await self.page.content()
        scroll_y = await _quiet(self.page.evaluate("() => window.scrollY"), 0.0)
        return CartScanState(
            scroll_y=float(scroll_y or 0),
            products=parse_cart_html(html),
            ui_total=parse_cart_total(html),
            end_visible=has_end_marker(html),
        )

    async def scroll_cart(self, distance: int) -> None:
        await self.human.smooth_scroll(distance)
        await random_sleep(650, 1200)

    async def extract_cart(self) -> tuple[list[CartProduct], Optional[int]]:
        products, ui_total = await cart_extractor.extract_with_total(self.page)
        logger.info(f"Cart extracted: {len(products)} item(s), UI total {ui_total}")
        return products, ui_total

    # ------------------------------------------------------------------
    # Debugging
    # ------------------------------------------------------------------

    async def save_debug_artifacts(self, tag: str, meta: dict[str, Any]) -> None:
        if not settings.acquisition_debug:
            return
        directory = Path(settings.debug_artifacts_dir)
        directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        prefix = directory / f"{stamp}_{re.sub(r'[^a-zA-Z0-9._-]+', '_', tag)}"
        await _quiet(self.page.screenshot(path=f"{prefix}.png", full_page=True))
        payload = {"at": stamp, "url": self.page.url, **meta}
        Path(f"{prefix}.json").write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
