"""Live listing updates published on Redis pub/sub.

Consumers (dashboards) subscribe to the channel; publishing is
fire-and-forget and never fails the scrape that produced the update.
"""

import asyncio
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import redis.asyncio as redis

from cartwatch.config import settings

logger = logging.getLogger(__name__)


def _default(value: Any):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class LiveUpdatePublisher:
    """Publishes listing and cart-stat events to a Redis channel."""

    def __init__(self, redis_url: Optional[str] = None, channel: Optional[str] = None, client=None):
        self.redis_url = redis_url or settings.redis_url
        self.channel = channel or settings.live_update_channel
        self._redis: Optional[redis.Redis] = client
        self._pending: set[asyncio.Task] = set()

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def publish(self, event: str, data: dict[str, Any]) -> bool:
        message = json.dumps({"event": event, "data": data}, default=_default, ensure_ascii=False)
        try:
            client = await self._get_redis()
            await client.publish(self.channel, message)
            return True
        except Exception as e:
            logger.warning(f"Live update '{event}' not published: {e}")
            return False

    def _fire(self, event: str, data: dict[str, Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self.publish(event, data))
        except RuntimeError:
            logger.debug(f"No running loop, dropping live update '{event}'")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def notify_listing_update(self, listing_pk: int, payload: dict[str, Any]) -> None:
        """Push {last_checked_at, current_price, title} for a listing."""
        self._fire("listing_updated", {"listing_pk": listing_pk, **payload})

    def notify_cart_stats(self, account_id: int, total: Optional[int], loaded: int) -> None:
        """Push how many cart items the UI declares versus how many were read."""
        self._fire("cart_stats", {"account_id": account_id, "total": total, "loaded": loaded})

    async def flush(self) -> None:
        """Wait for in-flight publishes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# Global live update publisher
live_updates = LiveUpdatePublisher()
