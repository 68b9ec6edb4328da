"""Background cart monitoring tasks."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from cartwatch import metrics
from cartwatch.agent.client import RemoteAgentError
from cartwatch.config import settings
from cartwatch.db.models import Account, AccountStatus, Listing
from cartwatch.ingest.cart_scraper import CartScrapeResult
from cartwatch.ingest.errors import AccountLockedError, AuthChallengeError
from cartwatch.ingest.sku_acquisition import AcquisitionOptions, cart_keys_for, count_variants
from cartwatch.logging_config import get_logger

logger = logging.getLogger(__name__)

SCRAPE_RETRIES = 2
SCRAPE_RETRY_DELAY_SECONDS = 1.5


@dataclass
class AccountOutcome:
    status: AccountStatus
    error_count: int
    is_active: Optional[bool] = None
    error: Optional[str] = None


def account_outcome(
    error_count: int,
    error: Optional[BaseException],
    cooldown_threshold: Optional[int] = None,
) -> AccountOutcome:
    """Map a run's result to the account's next lifecycle state."""
    if error is None:
        return AccountOutcome(status=AccountStatus.IDLE, error_count=0)

    message = str(error) or type(error).__name__
    if isinstance(error, AccountLockedError):
        # Locked elsewhere while the run was in flight; keep it locked
        return AccountOutcome(
            status=AccountStatus.LOCKED,
            error_count=error_count or 0,
            is_active=False,
            error=message,
        )
    if isinstance(error, AuthChallengeError):
        # Captcha pages need a human; login pages need fresh cookies
        return AccountOutcome(
            status=AccountStatus(error.status),
            error_count=error_count,
            is_active=False,
            error=message,
        )

    threshold = settings.account_cooldown_error_threshold if cooldown_threshold is None else cooldown_threshold
    count = (error_count or 0) + 1
    status = AccountStatus.COOLDOWN if count >= threshold else AccountStatus.IDLE
    return AccountOutcome(status=status, error_count=count, error=message)


class CartTaskRunner:
    """Runs the periodic cart scrape for every active account.

    With a remote agent configured, cart scrapes and top-ups run on the
    agent's browser instead of the local session manager.
    """

    def __init__(
        self,
        repository=None,
        scraper=None,
        acquisition=None,
        sessions=None,
        pauses=None,
        live_updates=None,
        agent=None,
        sleep=asyncio.sleep,
    ):
        if repository is None:
            from cartwatch.db.repository import listing_repository as repository
        if scraper is None:
            from cartwatch.ingest.cart_scraper import cart_scraper as scraper
        if acquisition is None:
            from cartwatch.ingest.sku_acquisition import sku_acquisition_engine as acquisition
        if sessions is None:
            from cartwatch.ingest.session_manager import session_manager as sessions
        if pauses is None:
            from cartwatch.worker.pause_control import pause_coordinator as pauses
        if live_updates is None:
            from cartwatch.notify.live_updates import live_updates
        if agent is None:
            from cartwatch.agent.client import remote_agent as agent
        self.repository = repository
        self.scraper = scraper
        self.acquisition = acquisition
        self.sessions = sessions
        self.pauses = pauses
        self.live_updates = live_updates
        self.agent = agent
        self._sleep = sleep

    async def run_all_accounts(self) -> int:
        """Scrape every active account, a bounded number at a time.

        Returns:
            Number of accounts processed
        """
        accounts = await self.repository.list_active_accounts()
        if not accounts:
            logger.info("No active accounts to scrape")
            metrics.record_scheduler_run("cart_scrape", True)
            return 0

        semaphore = asyncio.Semaphore(max(1, settings.max_concurrent_accounts))

        async def bounded(account: Account):
            async with semaphore:
                await self.run_account(account)

        results = await asyncio.gather(*(bounded(a) for a in accounts), return_exceptions=True)
        failures = 0
        for account, result in zip(accounts, results):
            if isinstance(result, Exception):
                failures += 1
                logger.error(f"Unhandled error for account {account.id}: {result}")

        swept = await self.sessions.sweep_idle()
        if swept:
            logger.info(f"Disposed {swept} idle browser session(s)")

        metrics.record_scheduler_run("cart_scrape", failures == 0)
        logger.info(f"Cart scrape run finished: {len(accounts)} account(s), {failures} unhandled failure(s)")
        return len(accounts)

    async def run_account(self, account: Account) -> AccountOutcome:
        """Scrape, top up and reconcile one account, then record its state."""
        log = get_logger(__name__, account_id=account.id)
        error: Optional[BaseException] = None

        if await self.repository.get_account_status(account.id) == AccountStatus.LOCKED.value:
            log.info("Account is locked, skipping run")
            return account_outcome(account.error_count, AccountLockedError(account.id))

        await self.repository.update_account_status(account.id, AccountStatus.RUNNING)
        try:
            await self._process(account)
        except AuthChallengeError as e:
            log.warning(f"Authentication challenge: {e}")
            error = e
        except AccountLockedError as e:
            log.warning(str(e))
            error = e
        except Exception as e:
            log.exception(f"Cart run failed: {e}")
            error = e

        outcome = account_outcome(account.error_count, error)
        await self.repository.update_account_status(
            account.id,
            outcome.status,
            error=outcome.error,
            error_count=outcome.error_count,
            is_active=outcome.is_active,
        )
        metrics.account_status_transitions_total.labels(status=outcome.status.value).inc()
        if outcome.is_active is False:
            await self.sessions.dispose_session(account.id, reason=outcome.status.value.lower())
        return outcome

    async def _process(self, account: Account) -> None:
        log = get_logger(__name__, account_id=account.id)
        migrated = await self.repository.ensure_base_listings(account.id)
        if migrated:
            log.info(f"Migrated {migrated} legacy listing(s)")

        listings = await self.repository.find_active_base_listings(account.id)
        if not listings:
            log.info("No monitored listings, skipping")
            return

        cart = await self.scrape_with_retry(account)
        self.live_updates.notify_cart_stats(account.id, cart.ui_total, cart.total)
        if not cart.success:
            raise RuntimeError(cart.error or "cart scrape failed")

        if await self.top_up(account, listings, cart):
            refreshed = await self.scrape_with_retry(account)
            if refreshed.success:
                cart = refreshed

        result = await self.scraper.update_prices_from_cart(
            account.id,
            account.cookies,
            cart_result=cart,
            user_id=account.user_id,
        )
        log.info(f"Reconciled: updated={result.updated} missing={result.missing} failed={result.failed}")

    async def scrape_with_retry(self, account: Account) -> CartScrapeResult:
        """Scrape the cart with any in-flight acquisition paused."""
        async with self.pauses.paused(account.id, settings.topup_pause_timeout_seconds):
            result = await self._scrape(account)
            for attempt in range(SCRAPE_RETRIES):
                if result.success:
                    break
                logger.info(f"Retrying cart scrape for account {account.id} ({attempt + 1}/{SCRAPE_RETRIES})")
                await self._sleep(SCRAPE_RETRY_DELAY_SECONDS)
                result = await self._scrape(account)
        return result

    async def _scrape(self, account: Account) -> CartScrapeResult:
        if not self.agent.enabled:
            return await self.scraper.scrape_cart(account.id, account.cookies)

        await self._refuse_locked(account.id)
        try:
            return await self.agent.scrape_cart(account.id, account.cookies)
        except RemoteAgentError as e:
            logger.warning(f"Remote cart scrape failed for account {account.id}: {e}")
            return CartScrapeResult(success=False, error=str(e))

    async def _refuse_locked(self, account_id: int) -> None:
        if await self.repository.get_account_status(account_id) == AccountStatus.LOCKED.value:
            raise AccountLockedError(account_id)

    async def top_up(self, account: Account, listings: list[Listing], cart: CartScrapeResult) -> bool:
        """Add missing SKUs for listings holding fewer variants than their target.

        Only runs against a fully loaded cart, and only for listings that
        already have at least one variant in it.
        """
        if cart.ui_total is not None and cart.total < cart.ui_total:
            logger.info(
                f"Cart for account {account.id} only partly loaded ({cart.total}/{cart.ui_total}), skipping top-up"
            )
            return False

        topped_up = False
        for listing in listings:
            target = listing.sku_target or 0
            current = count_variants(cart.products, listing.listing_id)
            if target <= 0 or current <= 0 or current >= target:
                continue

            log = get_logger(__name__, account_id=account.id, listing_id=listing.listing_id)
            log.info(f"Topping up from {current} to {target} SKU(s)")
            options = AcquisitionOptions(
                target_count=target,
                existing_cart_keys=cart_keys_for(cart.products, listing.listing_id),
                refresh_cart_after=False,
            )
            if self.agent.enabled:
                await self._refuse_locked(account.id)
                result = await self.agent.add_all_skus_to_cart(account.id, listing.listing_id, account.cookies, options)
            else:
                result = await self.acquisition.add_all_skus_to_cart(
                    account.id, listing.listing_id, account.cookies, options
                )
            topped_up = topped_up or result.added > 0
        return topped_up


# Global task runner instance
task_runner = CartTaskRunner()
