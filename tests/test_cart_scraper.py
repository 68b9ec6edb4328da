"""Tests for cart scraping and the reconcile pipeline."""

from decimal import Decimal

import pytest

from cartwatch.db.models import Account, AccountStatus, Listing
from cartwatch.ingest.cart_scraper import CartScrapeResult, CartScraper
from cartwatch.ingest.errors import AccountLockedError, LoginRequiredError
from cartwatch.ingest.price_reconciler import PriceReconciler
from cartwatch.worker.account_lock import AccountLockRegistry
from fakes import FakePageAdapter, RecordingLiveUpdates, RecordingNotifier, StatusRepository

ACCOUNT = 1
CLOSED = RuntimeError("Target page, context or browser has been closed")


def make_scraper(site, sessions, keep_open=False, repository=None, statuses=None):
    return CartScraper(
        sessions=sessions,
        locks=AccountLockRegistry(),
        repository=repository or StatusRepository(statuses),
        reconciler=object() if repository is None else PriceReconciler(
            repository=repository, notifier=RecordingNotifier(), live_updates=RecordingLiveUpdates()
        ),
        adapter_factory=lambda session: FakePageAdapter(site),
        keep_open=keep_open,
    )


@pytest.mark.asyncio
async def test_scrape_returns_all_items(site, fake_sessions):
    site.put_in_cart("Color:Red", "10.00")
    site.put_in_cart("Color:Blue", "12.00")
    site.ui_total = 2

    result = await make_scraper(site, fake_sessions).scrape_cart(ACCOUNT, "[]")

    assert result.success
    assert result.total == 2
    assert result.ui_total == 2
    assert site.reloads == 1


@pytest.mark.asyncio
async def test_fatal_error_retried_once_in_keep_open_mode(site, fake_sessions):
    site.reload_errors = [CLOSED]

    result = await make_scraper(site, fake_sessions, keep_open=True).scrape_cart(ACCOUNT, "[]")

    assert result.success
    assert site.reloads == 2
    assert fake_sessions.disposed == [(ACCOUNT, "fatal")]
    assert fake_sessions.created == 2


@pytest.mark.asyncio
async def test_fatal_error_not_retried_by_default(site, fake_sessions):
    site.reload_errors = [CLOSED]

    result = await make_scraper(site, fake_sessions).scrape_cart(ACCOUNT, "[]")

    assert not result.success
    assert "has been closed" in result.error
    assert site.reloads == 1
    assert fake_sessions.disposed == [(ACCOUNT, "fatal")]


@pytest.mark.asyncio
async def test_non_fatal_error_keeps_session_in_keep_open_mode(site, fake_sessions):
    site.reload_errors = [TimeoutError("Timeout 30000ms exceeded")]

    result = await make_scraper(site, fake_sessions, keep_open=True).scrape_cart(ACCOUNT, "[]")

    assert not result.success
    assert fake_sessions.disposed == []


@pytest.mark.asyncio
async def test_non_fatal_error_disposes_by_default(site, fake_sessions):
    site.reload_errors = [TimeoutError("Timeout 30000ms exceeded")]

    await make_scraper(site, fake_sessions).scrape_cart(ACCOUNT, "[]")

    assert fake_sessions.disposed == [(ACCOUNT, "error")]


@pytest.mark.asyncio
async def test_auth_challenge_propagates(site, fake_sessions):
    site.reload_errors = [LoginRequiredError("Login required")]
    with pytest.raises(LoginRequiredError):
        await make_scraper(site, fake_sessions).scrape_cart(ACCOUNT, "[]")


@pytest.mark.asyncio
async def test_locked_account_refused(site, fake_sessions):
    with pytest.raises(AccountLockedError):
        await make_scraper(site, fake_sessions).scrape_cart(ACCOUNT, "[]", account_status="LOCKED")
    assert fake_sessions.created == 0


@pytest.mark.asyncio
async def test_stored_lock_refused_without_status_argument(site, fake_sessions):
    scraper = make_scraper(site, fake_sessions, statuses={ACCOUNT: "LOCKED"})

    with pytest.raises(AccountLockedError):
        await scraper.scrape_cart(ACCOUNT, "[]")

    assert scraper.repository.lookups == 1
    assert fake_sessions.created == 0
    assert site.reloads == 0


@pytest.mark.asyncio
async def test_explicit_status_skips_lookup(site, fake_sessions):
    scraper = make_scraper(site, fake_sessions, statuses={ACCOUNT: "LOCKED"})

    result = await scraper.scrape_cart(ACCOUNT, "[]", account_status="IDLE")

    assert result.success
    assert scraper.repository.lookups == 0


async def seed(session_factory):
    async with session_factory() as db:
        account = Account(name="main", cookies="[]")
        db.add(account)
        await db.flush()
        listing = Listing(account_id=account.id, listing_id="600100", current_price=Decimal("20.00"))
        db.add(listing)
        await db.commit()
        return account.id, listing.id


@pytest.mark.asyncio
async def test_update_prices_from_cart(site, fake_sessions, session_factory, repository):
    account_id, pk = await seed(session_factory)
    site.put_in_cart("Color:Red", "15.00")
    site.put_in_cart("Color:Blue", "18.00")

    result = await make_scraper(site, fake_sessions, repository=repository).update_prices_from_cart(account_id, "[]")

    assert result.updated == 1
    listing = await repository.get_listing(pk)
    assert listing.current_price == Decimal("15.00")


@pytest.mark.asyncio
async def test_update_prices_uses_supplied_result(site, fake_sessions, session_factory, repository):
    account_id, pk = await seed(session_factory)
    scraper = make_scraper(site, fake_sessions, repository=repository)

    result = await scraper.update_prices_from_cart(
        account_id, "[]", cart_result=CartScrapeResult(success=False, error="boom")
    )

    assert result.failed == 1
    assert site.reloads == 0
    assert (await repository.get_listing(pk)).current_price == Decimal("20.00")


@pytest.mark.asyncio
async def test_update_prices_refuses_locked_account(site, fake_sessions, session_factory, repository):
    account_id, pk = await seed(session_factory)
    await repository.update_account_status(account_id, AccountStatus.LOCKED)
    site.put_in_cart("Color:Red", "15.00")

    with pytest.raises(AccountLockedError):
        await make_scraper(site, fake_sessions, repository=repository).update_prices_from_cart(account_id, "[]")

    assert fake_sessions.created == 0
    assert (await repository.get_listing(pk)).current_price == Decimal("20.00")
