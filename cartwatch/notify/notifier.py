"""Price change notifications over webhooks.

Each subscriber (NotificationConfig) may enable a generic JSON webhook, a
Discord webhook and a Telegram bot. The notifier applies the subscriber's
threshold before sending anything.
"""

import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import httpx

from cartwatch import metrics
from cartwatch.config import settings
from cartwatch.db.models import Listing, NotificationConfig
from cartwatch.detect.price_drop import PriceChange, ThresholdRule

logger = logging.getLogger(__name__)


class ChannelType(Enum):
    """Supported notification channels."""
    GENERIC = "generic"
    DISCORD = "discord"
    TELEGRAM = "telegram"


def _fmt(price: Decimal | None) -> str:
    return "-" if price is None else f"¥{Decimal(price):.2f}"


def format_message(listing: Listing, change: PriceChange) -> str:
    direction = "dropped" if change.is_drop else "rose"
    lines = [
        f"{listing.title or listing.listing_id}",
        f"Price {direction}: {_fmt(change.old_price)} -> {_fmt(change.new_price)}",
    ]
    if change.is_drop:
        lines.append(f"Saving {_fmt(change.amount)} ({change.percent:.1f}%)")
    if listing.url:
        lines.append(listing.url)
    return "\n".join(lines)


def build_generic_payload(listing: Listing, change: PriceChange) -> dict[str, Any]:
    return {
        "event": "price_drop" if change.is_drop else "price_up",
        "listing_id": listing.listing_id,
        "title": listing.title,
        "url": listing.url,
        "image_url": listing.image_url,
        "old_price": str(change.old_price),
        "new_price": str(change.new_price),
        "drop_amount": str(change.amount),
        "drop_percent": f"{change.percent:.2f}",
    }


class PriceNotifier:
    """Sends price change notifications to subscriber channels."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.notification_timeout)
        return self._http_client

    async def close(self):
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def notify_price_change(
        self,
        listing: Listing,
        change: PriceChange,
        configs: list[NotificationConfig],
    ) -> int:
        """Deliver a change to every subscriber whose threshold it clears.

        Returns:
            Number of subscribers notified
        """
        notified = 0
        for config in configs:
            triggered, reason = ThresholdRule.from_config(config).check(change)
            if not triggered:
                logger.debug(f"Listing {listing.listing_id}: not notifying user {config.user_id}: {reason}")
                continue
            if await self.send_price_drop_notification(
                listing, change.old_price, change.new_price, change, config
            ):
                notified += 1
        return notified

    async def send_price_drop_notification(
        self,
        listing: Listing,
        old_price: Decimal,
        new_price: Decimal,
        drop: PriceChange,
        subscriber_config: NotificationConfig,
    ) -> bool:
        """Send one subscriber's notification on all of their channels.

        Returns:
            True if at least one channel accepted the message
        """
        any_sent = False
        channels = [
            (ChannelType.GENERIC, subscriber_config.webhook_url, self._send_generic),
            (ChannelType.DISCORD, subscriber_config.discord_webhook_url, self._send_discord),
            (ChannelType.TELEGRAM, subscriber_config.telegram_bot_token, self._send_telegram),
        ]
        for channel, target, sender in channels:
            if not target:
                continue
            try:
                success = await sender(subscriber_config, listing, drop)
            except httpx.HTTPError as e:
                logger.error(f"{channel.value} notification failed for listing {listing.listing_id}: {e}")
                success = False
            metrics.record_notification(channel.value, success)
            any_sent = any_sent or success

        if any_sent:
            logger.info(
                f"Notified user {subscriber_config.user_id}: {listing.listing_id} "
                f"{old_price} -> {new_price}"
            )
        return any_sent

    async def _send_generic(self, config: NotificationConfig, listing: Listing, change: PriceChange) -> bool:
        client = await self._get_client()
        response = await client.post(config.webhook_url, json=build_generic_payload(listing, change))
        success = response.status_code in (200, 201, 202, 204)
        if not success:
            logger.warning(f"Generic webhook failed: {response.status_code} - {response.text}")
        return success

    async def _send_discord(self, config: NotificationConfig, listing: Listing, change: PriceChange) -> bool:
        embed = {
            "title": (listing.title or listing.listing_id)[:256],
            "url": listing.url,
            "description": format_message(listing, change),
            "color": 0x2ECC71 if change.is_drop else 0xE74C3C,
        }
        if listing.image_url:
            embed["thumbnail"] = {"url": listing.image_url}

        client = await self._get_client()
        response = await client.post(config.discord_webhook_url, json={"embeds": [embed]})
        success = response.status_code in (200, 204)
        if not success:
            logger.warning(f"Discord webhook failed: {response.status_code} - {response.text}")
        return success

    async def _send_telegram(self, config: NotificationConfig, listing: Listing, change: PriceChange) -> bool:
        if not config.telegram_chat_id:
            logger.warning(f"Telegram channel for user {config.user_id} has no chat_id")
            return False

        url = f"https://api.telegram.org/bot{config.telegram_bot_token}/sendMessage"
        payload = {
            "chat_id": config.telegram_chat_id,
            "text": format_message(listing, change),
            "disable_web_page_preview": False,
        }
        client = await self._get_client()
        response = await client.post(url, json=payload)
        success = response.status_code == 200
        if not success:
            logger.warning(f"Telegram send failed: {response.status_code} - {response.text}")
        return success


# Global notifier instance
price_notifier = PriceNotifier()
