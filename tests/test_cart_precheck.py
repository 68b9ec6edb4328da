"""Tests for the cart precheck scroll loop and the pacing between SKUs."""

import random

import pytest

from cartwatch.config import settings
from cartwatch.ingest.page_adapter import CartScanState
from cartwatch.ingest.sku_acquisition import AcquisitionOptions, SkuAcquisitionEngine
from cartwatch.worker.account_lock import AccountLockRegistry
from cartwatch.worker.pause_control import PauseCoordinator
from fakes import FakeSessionManager, StatusRepository, cart_product

LISTING = "600100"


def variants(count, listing_id=LISTING):
    return [cart_product(listing_id, "10.00", variant_id=str(5001 + i)) for i in range(count)]


def state(scroll_y, products, ui_total=None, end_visible=False):
    return CartScanState(scroll_y=scroll_y, products=products, ui_total=ui_total, end_visible=end_visible)


class ScrollingCart:
    """Replays one scan state per read and records every scroll."""

    def __init__(self, *states):
        self.states = list(states)
        self.reads = 0
        self.scrolls = []

    async def read_cart_scan_state(self):
        current = self.states[min(self.reads, len(self.states) - 1)]
        self.reads += 1
        return current

    async def scroll_cart(self, distance):
        self.scrolls.append(distance)


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def make_engine(seed=3, sleep=None):
    return SkuAcquisitionEngine(
        sessions=FakeSessionManager(),
        locks=AccountLockRegistry(),
        pauses=PauseCoordinator(),
        repository=StatusRepository(),
        sleep=sleep or RecordingSleep(),
        rng=random.Random(seed),
    )


def is_forward(distance):
    return 320 <= distance <= 760


def is_nudge(distance):
    return -160 <= distance <= -60


# ---------------------------------------------------------------------------
# Stop conditions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stops_once_count_is_stable():
    cart = ScrollingCart(*(state(500.0 * i, variants(2)) for i in range(6)))

    keys = await make_engine().collect_cart_keys(cart, LISTING)

    assert cart.reads == settings.precheck_stable_rounds + 1
    assert {"5001", "5002"} <= keys
    assert all(is_forward(d) for d in cart.scrolls)


@pytest.mark.asyncio
async def test_stops_when_ui_total_is_loaded():
    cart = ScrollingCart(
        state(0.0, variants(1), ui_total=3),
        state(500.0, variants(2) + [cart_product("777", "10.00", variant_id="9001")], ui_total=3),
        state(1000.0, variants(3), ui_total=3),
    )

    keys = await make_engine().collect_cart_keys(cart, LISTING)

    assert cart.reads == 2
    assert len(cart.scrolls) == 1
    assert "5002" in keys
    assert "9001" not in keys


@pytest.mark.asyncio
async def test_stops_at_end_marker():
    cart = ScrollingCart(
        state(0.0, variants(1)),
        state(500.0, variants(2), end_visible=True),
        state(1000.0, variants(5)),
    )

    keys = await make_engine().collect_cart_keys(cart, LISTING)

    assert cart.reads == 2
    assert "5002" in keys
    assert "5003" not in keys


@pytest.mark.asyncio
async def test_stall_nudges_back_before_scrolling_on():
    sleep = RecordingSleep()
    cart = ScrollingCart(
        state(0.0, variants(1)),
        state(400.0, variants(2)),
        state(400.0, variants(3)),
        state(900.0, variants(4), end_visible=True),
    )

    keys = await make_engine(sleep=sleep).collect_cart_keys(cart, LISTING)

    assert cart.reads == 4
    assert len(cart.scrolls) == 4
    forward_1, forward_2, nudge, forward_3 = cart.scrolls
    assert is_forward(forward_1) and is_forward(forward_2) and is_forward(forward_3)
    assert is_nudge(nudge)
    assert len(sleep.calls) == 1
    assert 0.8 <= sleep.calls[0] <= 1.6
    assert "5004" in keys


@pytest.mark.asyncio
async def test_repeated_stalls_end_the_precheck():
    cart = ScrollingCart(*(state(0.0, variants(i + 1)) for i in range(6)))

    await make_engine().collect_cart_keys(cart, LISTING)

    assert cart.reads == settings.precheck_max_stalls + 1
    nudges = [d for d in cart.scrolls if d < 0]
    assert len(nudges) == settings.precheck_max_stalls - 1
    assert all(is_nudge(d) for d in nudges)


@pytest.mark.asyncio
async def test_round_limit_bounds_a_growing_cart():
    cart = ScrollingCart(*(state(500.0 * i, variants(i + 1)) for i in range(20)))

    keys = await make_engine().collect_cart_keys(cart, LISTING)

    assert cart.reads == settings.precheck_max_rounds
    assert len(keys) >= settings.precheck_max_rounds


# ---------------------------------------------------------------------------
# Delay between SKUs
# ---------------------------------------------------------------------------


def test_delay_stays_within_base_or_long_pause_range():
    engine = make_engine(seed=11)
    options = AcquisitionOptions(sku_delay_min=1.0, sku_delay_max=2.0)
    long_min = 1.0 + settings.sku_long_pause_min_seconds
    long_max = 2.0 + settings.sku_long_pause_max_seconds

    delays = [engine._sku_delay(options) for _ in range(2000)]

    base = [d for d in delays if d <= 2.0]
    long = [d for d in delays if d > 2.0]
    assert all(1.0 <= d <= 2.0 for d in base)
    assert all(long_min <= d <= long_max for d in long)
    share = len(long) / len(delays)
    assert settings.sku_long_pause_probability / 2 < share < settings.sku_long_pause_probability * 2


def test_inverted_bounds_collapse_to_minimum(monkeypatch):
    monkeypatch.setattr(settings, "sku_long_pause_probability", 0.0)
    engine = make_engine()
    options = AcquisitionOptions(sku_delay_min=3.0, sku_delay_max=1.0)

    assert {engine._sku_delay(options) for _ in range(20)} == {3.0}


def test_certain_long_pause_is_always_added(monkeypatch):
    monkeypatch.setattr(settings, "sku_long_pause_probability", 1.0)
    engine = make_engine()
    options = AcquisitionOptions(sku_delay_min=1.0, sku_delay_max=1.0)

    delays = [engine._sku_delay(options) for _ in range(50)]

    assert all(
        1.0 + settings.sku_long_pause_min_seconds <= d <= 1.0 + settings.sku_long_pause_max_seconds
        for d in delays
    )


def test_delay_defaults_come_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "sku_long_pause_probability", 0.0)
    engine = make_engine()

    delays = [engine._sku_delay(AcquisitionOptions()) for _ in range(100)]

    assert all(settings.sku_delay_min_seconds <= d <= settings.sku_delay_max_seconds for d in delays)
