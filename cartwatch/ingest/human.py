"""Human-like pointer, scroll and navigation behavior for Playwright pages."""

import asyncio
import logging
import random
from typing import Optional

from playwright.async_api import Locator, Page

from cartwatch.config import settings

logger = logging.getLogger(__name__)


async def random_sleep(min_ms: int, max_ms: int) -> None:
    await asyncio.sleep(random.randint(min_ms, max_ms) / 1000)


def click_point(box: dict) -> tuple[float, float]:
    """Pick a jittered point near the center of a bounding box.

    Jitter is proportional to the box (12%) but clamped so small controls
    are never missed and large ones are not clicked near an edge.
    """
    jitter_x = min(12.0, max(3.0, box["width"] * 0.12))
    jitter_y = min(10.0, max(3.0, box["height"] * 0.12))
    x = box["x"] + box["width"] / 2 + random.uniform(-jitter_x, jitter_x)
    y = box["y"] + box["height"] / 2 + random.uniform(-jitter_y, jitter_y)
    return x, y


def _cubic_bezier(p0: float, p1: float, p2: float, p3: float, t: float) -> float:
    u = 1 - t
    return u * u * u * p0 + 3 * u * u * t * p1 + 3 * u * t * t * p2 + t * t * t * p3


class HumanSimulator:
    """Drives a page with randomized, curved pointer paths and smooth scrolling."""

    BEZIER_STEPS = 20
    SCROLL_STEP_PX = 20
    WANDER_PROBABILITY = 0.15

    def __init__(self, page: Page):
        self.page = page
        self._mouse_x = 0.0
        self._mouse_y = 0.0

    async def navigate(self, url: str, timeout_ms: Optional[int] = None) -> None:
        await random_sleep(500, 1200)
        await self.page.goto(
            url,
            wait_until="domcontentloaded",
            timeout=timeout_ms or settings.navigation_timeout_ms,
        )
        await random_sleep(800, 2000)

    async def bezier_move(self, target_x: float, target_y: float) -> None:
        start_x, start_y = self._mouse_x, self._mouse_y
        cp1x = start_x + (target_x - start_x) * 0.3 + random.randint(-50, 50)
        cp1y = start_y + (target_y - start_y) * 0.3 + random.randint(-50, 50)
        cp2x = start_x + (target_x - start_x) * 0.7 + random.randint(-50, 50)
        cp2y = start_y + (target_y - start_y) * 0.7 + random.randint(-50, 50)

        for i in range(self.BEZIER_STEPS + 1):
            t = i / self.BEZIER_STEPS
            x = _cubic_bezier(start_x, cp1x, cp2x, target_x, t)
            y = _cubic_bezier(start_y, cp1y, cp2y, target_y, t)
            await self.page.mouse.move(x, y)
            self._mouse_x, self._mouse_y = x, y
            await random_sleep(8, 20)

    async def smooth_scroll(self, distance: int) -> None:
        """Scroll by wheel ticks; negative distance scrolls up."""
        step = self.SCROLL_STEP_PX if distance >= 0 else -self.SCROLL_STEP_PX
        for _ in range(max(1, abs(distance) // self.SCROLL_STEP_PX)):
            await self.page.mouse.wheel(0, step)
            await random_sleep(10, 30)

    async def browse(self, scroll_steps: tuple[int, int] = (1, 3)) -> None:
        """Light browsing: a couple of scrolls and a possible pointer wander."""
        try:
            for _ in range(random.randint(*scroll_steps)):
                await self.smooth_scroll(random.randint(300, 800))
                await random_sleep(400, 900)
            await self.occasional_wander()
        except Exception as e:
            logger.debug(f"Error simulating human behavior: {e}")

    async def occasional_wander(self) -> None:
        if random.random() < self.WANDER_PROBABILITY:
            await self.bezier_move(random.randint(100, 800), random.randint(100, 600))
            await random_sleep(300, 600)

    async def click(self, locator: Locator) -> bool:
        """Pointer-level click with jitter, a multi-step move and a held press.

        Returns False when the element has no bounding box (detached or
        hidden); the caller decides whether to fall back to a DOM click.
        """
        try:
            await locator.scroll_into_view_if_needed(timeout=3000)
        except Exception as e:
            logger.debug(f"scroll_into_view failed: {e}")

        box = await locator.bounding_box()
        if not box:
            return False

        x, y = click_point(box)
        await self.page.mouse.move(x, y, steps=random.randint(12, 28))
        self._mouse_x, self._mouse_y = x, y
        await random_sleep(80, 180)
        await self.page.mouse.down()
        await random_sleep(40, 110)
        await self.page.mouse.up()
        return True
