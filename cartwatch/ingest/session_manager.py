"""Per-account persistent browser sessions.

Each account gets one Playwright context with its stored cookies and a
single page. Sessions are reused across scrapes and acquisition runs and
are rebuilt when the page dies or the account's cookies change.
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import Browser, BrowserContext, Page, async_playwright

from cartwatch import metrics
from cartwatch.config import settings
from cartwatch.db.encryption import parse_cookie_blob
from cartwatch.ingest.human import HumanSimulator
from cartwatch.ingest.stealth_browser import stealth_browser

logger = logging.getLogger(__name__)


def cookie_signature(blob: Optional[str]) -> str:
    """Fingerprint of a cookie blob: "<length>:<sha256 prefix>"."""
    if not blob:
        return ""
    digest = hashlib.sha256(blob.encode("utf-8")).hexdigest()[:16]
    return f"{len(blob)}:{digest}"


@dataclass
class BrowserSession:
    """One account's live context and its single active page."""

    account_id: int
    context: BrowserContext
    page: Page
    human: HumanSimulator
    cookie_signature: str
    headless: bool = True
    created_at: float = field(default_factory=time.monotonic)
    last_used_at: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_used_at = time.monotonic()

    def switch_to(self, page: Page) -> None:
        """Make `page` the session's active page (e.g. after a popup opened)."""
        if page is self.page:
            return
        self.page = page
        self.human = HumanSimulator(page)

    def is_page_closed(self) -> bool:
        try:
            return self.page.is_closed()
        except Exception:
            return True


BrowserLauncher = Callable[[bool], Awaitable[Browser]]


class BrowserSessionManager:
    """Owns the shared browser and one session per account."""

    def __init__(
        self,
        launcher: Optional[BrowserLauncher] = None,
        idle_ttl_seconds: Optional[int] = None,
        keep_open: Optional[bool] = None,
        warm_url: Optional[str] = None,
    ):
        """
        Args:
            launcher: Coroutine taking the headless flag and returning a Browser
                      (defaults to Playwright Chromium)
            idle_ttl_seconds: Idle time after which sweep_idle disposes a session
            keep_open: Never dispose idle sessions (visible-browser mode)
            warm_url: Page each new session loads first; empty string disables
        """
        self._launcher = launcher or self._launch_chromium
        self.idle_ttl_seconds = (
            settings.session_idle_ttl_seconds if idle_ttl_seconds is None else idle_ttl_seconds
        )
        self.keep_open = settings.keep_sessions_open if keep_open is None else keep_open
        self.warm_url = settings.cart_url if warm_url is None else warm_url

        self._playwright = None
        self._browsers: dict[bool, Browser] = {}
        self._browser_lock = asyncio.Lock()
        self._sessions: dict[int, BrowserSession] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, account_id: int) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    async def _launch_chromium(self, headless: bool) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        options = stealth_browser.get_launch_options(headless=headless)
        logger.info(f"Launching Chromium (headless={options['headless']})")
        return await self._playwright.chromium.launch(**options)

    async def _ensure_browser(self, headless: bool) -> Browser:
        """One browser per mode; headless and visible sessions never share one."""
        async with self._browser_lock:
            browser = self._browsers.get(headless)
            if browser is not None and browser.is_connected():
                return browser
            browser = await self._launcher(headless)
            self._browsers[headless] = browser
            return browser

    async def _is_session_alive(self, session: BrowserSession) -> bool:
        if session.is_page_closed():
            return False
        try:
            await session.page.evaluate("() => true")
            return True
        except Exception as e:
            logger.debug(f"Liveness check failed for account {session.account_id}: {e}")
            return False

    async def get_or_create_session(
        self,
        account_id: int,
        cookie_blob: Optional[str] = None,
        headless: Optional[bool] = None,
    ) -> BrowserSession:
        """Return the account's live session, creating or rebuilding it as needed.

        Args:
            account_id: Account that owns the session
            cookie_blob: Stored cookies (JSON array or encrypted form)
            headless: Browser mode for the session; None reuses whatever mode
                      the live session has (settings.browser_headless for new ones)

        Returns:
            A session whose page is open and responsive
        """
        signature = cookie_signature(cookie_blob)

        async with self._lock_for(account_id):
            existing = self._sessions.get(account_id)
            if existing is not None:
                if not await self._is_session_alive(existing):
                    logger.info(f"Session for account {account_id} is dead, recreating")
                    await self._dispose_locked(account_id, reason="dead")
                elif signature and signature != existing.cookie_signature:
                    logger.info(f"Cookies changed for account {account_id}, recreating session")
                    await self._dispose_locked(account_id, reason="cookies_changed")
                elif headless is not None and headless != existing.headless:
                    logger.info(f"Browser mode changed for account {account_id} (headless={headless}), recreating session")
                    await self._dispose_locked(account_id, reason="mode_changed")
                else:
                    existing.touch()
                    logger.debug(f"Reusing session for account {account_id}")
                    return existing

            if headless is None:
                headless = settings.browser_headless
            return await self._create_locked(account_id, cookie_blob, signature, headless)

    async def _create_locked(
        self, account_id: int, cookie_blob: Optional[str], signature: str, headless: bool
    ) -> BrowserSession:
        logger.info(f"Creating browser session for account {account_id} (headless={headless})")
        browser = await self._ensure_browser(headless)
        context = await browser.new_context(**stealth_browser.get_context_options())
        await stealth_browser.apply(context)

        cookies = parse_cookie_blob(cookie_blob)
        if cookies:
            try:
                await context.add_cookies(cookies)
            except Exception as e:
                logger.warning(f"Failed to inject cookies for account {account_id}: {e}")
        elif cookie_blob:
            logger.warning(f"Cookie blob for account {account_id} could not be parsed")

        page = await context.new_page()
        session = BrowserSession(
            account_id=account_id,
            context=context,
            page=page,
            human=HumanSimulator(page),
            cookie_signature=signature,
            headless=headless,
        )
        self._sessions[account_id] = session
        metrics.active_browser_sessions.set(len(self._sessions))

        if self.warm_url:
            try:
                await page.goto(
                    self.warm_url,
                    wait_until="domcontentloaded",
                    timeout=settings.navigation_timeout_ms,
                )
            except Exception as e:
                # Not fatal: the caller navigates again anyway
                logger.warning(f"Warm-up navigation failed for account {account_id}: {e}")

        return session

    async def dispose_session(self, account_id: int, reason: str = "requested") -> None:
        """Close an account's page and context. Safe to call repeatedly."""
        async with self._lock_for(account_id):
            await self._dispose_locked(account_id, reason)

    async def _dispose_locked(self, account_id: int, reason: str) -> None:
        session = self._sessions.pop(account_id, None)
        if session is None:
            return

        try:
            await session.page.close()
        except Exception as e:
            logger.debug(f"Error closing page for account {account_id}: {e}")
        try:
            await session.context.close()
        except Exception as e:
            logger.debug(f"Error closing context for account {account_id}: {e}")

        metrics.session_disposals_total.labels(reason=reason).inc()
        metrics.active_browser_sessions.set(len(self._sessions))
        logger.info(f"Disposed session for account {account_id} ({reason})")

    async def sweep_idle(self) -> int:
        """Dispose sessions idle longer than the TTL.

        Returns:
            Number of sessions disposed
        """
        if self.keep_open or self.idle_ttl_seconds <= 0:
            return 0

        now = time.monotonic()
        idle = [
            account_id
            for account_id, session in self._sessions.items()
            if now - session.last_used_at > self.idle_ttl_seconds
        ]
        disposed = 0
        for account_id in idle:
            lock = self._lock_for(account_id)
            if lock.locked():
                continue
            async with lock:
                session = self._sessions.get(account_id)
                if session is not None and time.monotonic() - session.last_used_at > self.idle_ttl_seconds:
                    await self._dispose_locked(account_id, reason="idle")
                    disposed += 1
        return disposed

    def has_session(self, account_id: int) -> bool:
        return account_id in self._sessions

    def get_session(self, account_id: int) -> Optional[BrowserSession]:
        return self._sessions.get(account_id)

    def list_session_summaries(self) -> list[dict[str, Any]]:
        summaries = []
        for session in self._sessions.values():
            closed = session.is_page_closed()
            url = None
            if not closed:
                try:
                    url = session.page.url
                except Exception:
                    url = None
            summaries.append(
                {
                    "account_id": session.account_id,
                    "headless": session.headless,
                    "last_used_at": session.last_used_at,
                    "page_closed": closed,
                    "url": url,
                }
            )
        return summaries

    async def close(self) -> None:
        """Dispose every session and shut the browser down."""
        for account_id in list(self._sessions):
            await self.dispose_session(account_id, reason="shutdown")
        for browser in self._browsers.values():
            try:
                await browser.close()
            except Exception as e:
                logger.debug(f"Error closing browser: {e}")
        self._browsers.clear()
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


# Global session manager instance
session_manager = BrowserSessionManager()
