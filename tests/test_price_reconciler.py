"""Tests for cart-to-listing price reconciliation."""

from decimal import Decimal

import pytest

from cartwatch.db.models import Account, Listing, NotificationConfig, PriceSnapshot
from cartwatch.ingest.price_reconciler import (
    MISSING_IN_CART_MESSAGE,
    NO_PRICE_MESSAGE,
    PriceReconciler,
    build_variants,
    index_previous_variants,
    min_positive_price,
)
from fakes import RecordingLiveUpdates, RecordingNotifier, cart_product


async def seed(session_factory, listing_ids=("600100",), current_price="100.00", with_config=False):
    async with session_factory() as db:
        account = Account(name="main", user_id=7, cookies="[]")
        db.add(account)
        await db.flush()
        pks = []
        for listing_id in listing_ids:
            listing = Listing(
                account_id=account.id,
                user_id=7,
                listing_id=listing_id,
                title="Wool coat",
                current_price=Decimal(current_price) if current_price else None,
            )
            db.add(listing)
            await db.flush()
            pks.append(listing.id)
        if with_config:
            db.add(NotificationConfig(user_id=7, trigger_type="AMOUNT", trigger_value=Decimal("5")))
        await db.commit()
        return account.id, pks


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def live():
    return RecordingLiveUpdates()


@pytest.fixture
def reconciler(repository, notifier, live):
    return PriceReconciler(repository=repository, notifier=notifier, live_updates=live)


def test_min_positive_price():
    assert min_positive_price([Decimal("0"), None, Decimal("12.5"), Decimal("9.9")]) == Decimal("9.9")
    assert min_positive_price([Decimal("0"), None]) is None


@pytest.mark.asyncio
async def test_current_price_is_min_positive_final(session_factory, repository, reconciler, live):
    account_id, [pk] = await seed(session_factory)
    products = [
        cart_product("600100", "120.00", "501", "Color:Red", original="150.00"),
        cart_product("600100", "89.90", "502", "Color:Blue", original="130.00"),
        cart_product("600100", "0", "503", "Color:Green"),
    ]

    result = await reconciler.reconcile(account_id, products)

    assert result.updated == 1
    listing = await repository.get_listing(pk)
    assert listing.current_price == Decimal("89.90")
    assert listing.original_price == Decimal("130.00")
    assert listing.last_error is None
    assert listing.last_checked_at is not None

    snapshot = await repository.latest_snapshot(pk)
    assert snapshot.final_price == Decimal("89.90")
    assert snapshot.raw_data["source"] == "cart"
    assert [v["variant_id"] for v in snapshot.raw_data["variants"]] == ["501", "502", "503"]
    assert live.listing_updates[0][0] == pk


@pytest.mark.asyncio
async def test_original_price_none_when_no_positive_original(session_factory, repository, reconciler):
    account_id, [pk] = await seed(session_factory)
    await reconciler.reconcile(account_id, [cart_product("600100", "95.00", "501")])

    listing = await repository.get_listing(pk)
    assert listing.original_price is None
    snapshot = await repository.latest_snapshot(pk)
    assert snapshot.original_price is None


@pytest.mark.asyncio
async def test_missing_listing_keeps_prices(session_factory, repository, reconciler):
    account_id, [present_pk, missing_pk] = await seed(session_factory, listing_ids=("600100", "600200"))

    result = await reconciler.reconcile(account_id, [cart_product("600100", "80.00", "501")])

    assert result.updated == 1
    assert result.missing == 1
    assert result.missing_listing_ids == ["600200"]
    missing = await repository.get_listing(missing_pk)
    assert missing.current_price == Decimal("100.00")
    assert missing.last_error == MISSING_IN_CART_MESSAGE
    assert await repository.latest_snapshot(missing_pk) is None


@pytest.mark.asyncio
async def test_no_positive_price_keeps_current(session_factory, repository, reconciler, notifier):
    account_id, [pk] = await seed(session_factory)

    await reconciler.reconcile(account_id, [cart_product("600100", "0", "501")])

    listing = await repository.get_listing(pk)
    assert listing.current_price == Decimal("100.00")
    assert listing.last_error == NO_PRICE_MESSAGE
    snapshot = await repository.latest_snapshot(pk)
    assert snapshot.final_price is None
    assert notifier.calls == []


@pytest.mark.asyncio
async def test_price_drop_notifies_subscribers(session_factory, reconciler, notifier):
    account_id, _ = await seed(session_factory, with_config=True)

    await reconciler.reconcile(account_id, [cart_product("600100", "90.00", "501")])

    [(listing_id, change, configs)] = notifier.calls
    assert listing_id == "600100"
    assert change.amount == Decimal("10")
    assert configs[0].user_id == 7


@pytest.mark.asyncio
async def test_unchanged_price_does_not_notify(session_factory, reconciler, notifier):
    account_id, _ = await seed(session_factory, with_config=True)
    await reconciler.reconcile(account_id, [cart_product("600100", "100.00", "501")])
    assert notifier.calls == []


@pytest.mark.asyncio
async def test_first_price_does_not_notify(session_factory, reconciler, notifier):
    account_id, _ = await seed(session_factory, current_price=None, with_config=True)
    await reconciler.reconcile(account_id, [cart_product("600100", "70.00", "501")])
    assert notifier.calls == []


@pytest.mark.asyncio
async def test_selections_survive_from_previous_snapshot(session_factory, repository, reconciler):
    account_id, [pk] = await seed(session_factory)
    selections = [{"prop_id": "p1", "prop_name": "Color", "value_id": "11", "value_name": "Red"}]
    async with session_factory() as db:
        db.add(
            PriceSnapshot(
                listing_pk=pk,
                account_id=account_id,
                final_price=Decimal("100"),
                raw_data={
                    "listing_id": "600100",
                    "source": "cart",
                    "variants": [
                        {"variant_id": None, "sku_properties": "color:red", "selections": selections, "vid_path": "11"}
                    ],
                },
            )
        )
        await db.commit()

    await reconciler.reconcile(account_id, [cart_product("600100", "99.00", "", "Color:Red")])

    snapshot = await repository.latest_snapshot(pk)
    [variant] = snapshot.raw_data["variants"]
    assert variant["selections"] == selections
    assert variant["vid_path"] == "11"


@pytest.mark.asyncio
async def test_listing_error_counts_as_failed(session_factory, repository, notifier, live):
    account_id, [good_pk, bad_pk] = await seed(session_factory, listing_ids=("600100", "600200"))

    class BrokenSnapshots(type(repository)):
        async def latest_snapshot(self, listing_pk):
            if listing_pk == bad_pk:
                raise RuntimeError("database hiccup")
            return await super().latest_snapshot(listing_pk)

    broken = BrokenSnapshots(session_factory)
    reconciler = PriceReconciler(repository=broken, notifier=notifier, live_updates=live)

    result = await reconciler.reconcile(
        account_id,
        [cart_product("600100", "90.00", "501"), cart_product("600200", "50.00", "601")],
    )

    assert result.updated == 1
    assert result.failed == 1


def test_build_variants_matches_previous_by_any_key():
    previous = index_previous_variants(
        {"variants": [{"variant_id": "501", "sku_properties": "size:m", "thumbnail_url": "t.jpg"}]}
    )
    [variant] = build_variants([cart_product("600100", "10.00", "501", "Size:L")], previous)
    assert variant["thumbnail_url"] == "t.jpg"
    assert variant["selections"] == []
    assert variant["vid_path"] == ""
