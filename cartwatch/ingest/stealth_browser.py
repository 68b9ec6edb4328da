"""Stealth settings for Playwright contexts.

Hides the webdriver flag and the other automation tells, and pins the
context to a realistic desktop profile for the target site.
"""

import logging
import random
from typing import Any, Dict

from playwright.async_api import BrowserContext

from cartwatch.config import settings

logger = logging.getLogger(__name__)

# Desktop Chrome builds seen on the target market
USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
]

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-first-run",
    "--no-default-browser-check",
]

STEALTH_SCRIPTS = [
    # Hide webdriver property
    """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => undefined
    });
    """,
    # Mock plugins
    """
    Object.defineProperty(navigator, 'plugins', {
        get: () => [1, 2, 3, 4, 5]
    });
    """,
    # Languages matching the context locale
    """
    Object.defineProperty(navigator, 'languages', {
        get: () => ['zh-CN', 'zh', 'en']
    });
    """,
    # Chrome runtime
    """
    window.chrome = window.chrome || { runtime: {} };
    """,
    # Override permissions
    """
    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) => (
        parameters.name === 'notifications' ?
            Promise.resolve({ state: Notification.permission }) :
            originalQuery(parameters)
    );
    """,
]


class StealthBrowser:
    """Context options and init scripts for account sessions."""

    def get_launch_options(self, headless: bool | None = None) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "headless": settings.browser_headless if headless is None else headless,
            "args": list(LAUNCH_ARGS),
        }
        if settings.browser_channel:
            options["channel"] = settings.browser_channel
        return options

    def get_context_options(self, user_agent: str | None = None) -> Dict[str, Any]:
        """
        Get Playwright context options for an account session.

        The viewport, locale and timezone are fixed per deployment so that a
        returning account always presents the same profile.
        """
        return {
            "viewport": {"width": settings.viewport_width, "height": settings.viewport_height},
            "locale": settings.browser_locale,
            "timezone_id": settings.browser_timezone,
            "color_scheme": "light",
            "user_agent": user_agent or random.choice(USER_AGENTS),
        }

    async def apply(self, context: BrowserContext) -> None:
        """Register stealth init scripts on a context."""
        for script in STEALTH_SCRIPTS:
            try:
                await context.add_init_script(script)
            except Exception as e:
                logger.debug(f"Error injecting stealth script: {e}")


# Global stealth browser instance
stealth_browser = StealthBrowser()
