"""Tests for webhook delivery."""

import json
from decimal import Decimal

import httpx
import pytest

from cartwatch.db.models import Listing, NotificationConfig
from cartwatch.detect.price_drop import calculate_price_drop
from cartwatch.notify.notifier import PriceNotifier, build_generic_payload, format_message


def make_listing():
    return Listing(
        id=7,
        account_id=1,
        listing_id="600100",
        title="Wool coat",
        url="https://item.taobao.com/item.htm?id=600100",
    )


def make_config(**kwargs):
    defaults = dict(user_id=1, trigger_type="AMOUNT", trigger_value=Decimal("5"), notify_on_price_up=False, enabled=True)
    defaults.update(kwargs)
    return NotificationConfig(**defaults)


def recording_client(status_code=200):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), requests


def test_generic_payload_fields():
    payload = build_generic_payload(make_listing(), calculate_price_drop(Decimal("100"), Decimal("90")))
    assert payload["event"] == "price_drop"
    assert payload["new_price"] == "90"
    assert payload["drop_amount"] == "10"


def test_message_mentions_both_prices():
    text = format_message(make_listing(), calculate_price_drop(Decimal("100"), Decimal("90")))
    assert "¥100.00 -> ¥90.00" in text
    assert "10.0%" in text


@pytest.mark.asyncio
async def test_drop_above_threshold_is_sent():
    client, requests = recording_client()
    notifier = PriceNotifier(client=client)
    config = make_config(webhook_url="https://hooks.example.com/a")

    sent = await notifier.notify_price_change(
        make_listing(), calculate_price_drop(Decimal("100"), Decimal("90")), [config]
    )

    assert sent == 1
    assert str(requests[0].url) == "https://hooks.example.com/a"
    assert json.loads(requests[0].content)["listing_id"] == "600100"
    await notifier.close()


@pytest.mark.asyncio
async def test_drop_below_threshold_is_filtered():
    client, requests = recording_client()
    notifier = PriceNotifier(client=client)
    config = make_config(trigger_value=Decimal("20"), webhook_url="https://hooks.example.com/a")

    sent = await notifier.notify_price_change(
        make_listing(), calculate_price_drop(Decimal("100"), Decimal("90")), [config]
    )

    assert sent == 0
    assert requests == []
    await notifier.close()


@pytest.mark.asyncio
async def test_every_configured_channel_is_used():
    client, requests = recording_client()
    notifier = PriceNotifier(client=client)
    config = make_config(
        discord_webhook_url="https://discord.example.com/hook",
        telegram_bot_token="123:abc",
        telegram_chat_id="42",
    )

    await notifier.notify_price_change(
        make_listing(), calculate_price_drop(Decimal("100"), Decimal("90")), [config]
    )

    hosts = sorted(r.url.host for r in requests)
    assert hosts == ["api.telegram.org", "discord.example.com"]
    await notifier.close()


@pytest.mark.asyncio
async def test_failed_channel_reports_not_sent():
    client, _ = recording_client(status_code=500)
    notifier = PriceNotifier(client=client)
    config = make_config(webhook_url="https://hooks.example.com/a")

    sent = await notifier.notify_price_change(
        make_listing(), calculate_price_drop(Decimal("100"), Decimal("90")), [config]
    )

    assert sent == 0
    await notifier.close()


@pytest.mark.asyncio
async def test_transport_error_is_logged_not_raised():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    notifier = PriceNotifier(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    config = make_config(webhook_url="https://hooks.example.com/a")

    sent = await notifier.notify_price_change(
        make_listing(), calculate_price_drop(Decimal("100"), Decimal("90")), [config]
    )

    assert sent == 0
    await notifier.close()
