"""Cart scraping: read every cart line item and reconcile prices."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from cartwatch import metrics
from cartwatch.config import settings
from cartwatch.db.models import AccountStatus
from cartwatch.ingest.cart_extractor import CartProduct
from cartwatch.ingest.errors import AccountLockedError, AuthChallengeError, is_fatal_session_error
from cartwatch.ingest.page_adapter import PageAdapter, PlaywrightPageAdapter
from cartwatch.ingest.price_reconciler import ReconcileResult
from cartwatch.ingest.session_manager import BrowserSession

logger = logging.getLogger(__name__)


@dataclass
class CartScrapeResult:
    success: bool
    products: list[CartProduct] = field(default_factory=list)
    total: int = 0
    ui_total: Optional[int] = None
    error: Optional[str] = None


class CartScraper:
    """Scrapes an account's cart through its persistent browser session."""

    def __init__(
        self,
        sessions=None,
        locks=None,
        repository=None,
        reconciler=None,
        adapter_factory: Optional[Callable[[BrowserSession], PageAdapter]] = None,
        keep_open: Optional[bool] = None,
    ):
        if sessions is None:
            from cartwatch.ingest.session_manager import session_manager as sessions
        if locks is None:
            from cartwatch.worker.account_lock import account_locks as locks
        if repository is None:
            from cartwatch.db.repository import listing_repository as repository
        if reconciler is None:
            from cartwatch.ingest.price_reconciler import PriceReconciler

            reconciler = PriceReconciler(repository=repository)
        self.sessions = sessions
        self.locks = locks
        self.repository = repository
        self.reconciler = reconciler
        self.adapter_factory = adapter_factory or PlaywrightPageAdapter
        self.keep_open = settings.keep_sessions_open if keep_open is None else keep_open

    async def scrape_cart(
        self,
        account_id: int,
        cookie_blob: Optional[str] = None,
        account_status: Optional[str] = None,
    ) -> CartScrapeResult:
        """Refresh the cart page and extract every line item.

        Fatal session errors dispose the session; in keep-open mode the
        scrape is retried once on a fresh session. Authentication
        challenges are raised to the caller, as is a LOCKED account (the
        stored status is read when `account_status` is not given).
        """
        await self._refuse_locked(account_id, account_status)

        attempts = 2 if self.keep_open else 1
        started = time.monotonic()

        for attempt in range(1, attempts + 1):
            async with self.locks.hold(account_id, "cart_scrape"):
                try:
                    session = await self.sessions.get_or_create_session(account_id, cookie_blob)
                    adapter = self.adapter_factory(session)
                    await adapter.reload_cart()
                    products, ui_total = await adapter.extract_cart()
                except AuthChallengeError:
                    metrics.record_scrape(False, time.monotonic() - started)
                    raise
                except Exception as e:
                    fatal = is_fatal_session_error(e)
                    if fatal:
                        await self.sessions.dispose_session(account_id, reason="fatal")
                    elif not self.keep_open:
                        await self.sessions.dispose_session(account_id, reason="error")

                    if fatal and attempt < attempts:
                        logger.warning(f"Fatal session error for account {account_id}, retrying once: {e}")
                        continue

                    logger.error(f"Cart scrape failed for account {account_id}: {e}")
                    metrics.record_scrape(False, time.monotonic() - started)
                    return CartScrapeResult(success=False, error=str(e))

            metrics.record_scrape(True, time.monotonic() - started)
            logger.info(f"Scraped {len(products)} cart item(s) for account {account_id} (UI total {ui_total})")
            return CartScrapeResult(
                success=True,
                products=products,
                total=len(products),
                ui_total=ui_total,
            )

        # Unreachable: the last attempt either returns or raises
        return CartScrapeResult(success=False, error="scrape not attempted")

    async def update_prices_from_cart(
        self,
        account_id: int,
        cookie_blob: Optional[str] = None,
        cart_result: Optional[CartScrapeResult] = None,
        user_id: Optional[int] = None,
        account_status: Optional[str] = None,
    ) -> ReconcileResult:
        """Migrate legacy rows, scrape (unless given a result) and reconcile."""
        account_status = await self._refuse_locked(account_id, account_status)

        migrated = await self.repository.ensure_base_listings(account_id)
        if migrated:
            logger.info(f"Migrated {migrated} legacy listing(s) for account {account_id}")

        listings = await self.repository.find_active_base_listings(account_id)
        if not listings:
            logger.info(f"No monitored listings for account {account_id}, skipping cart scrape")
            return ReconcileResult()

        if cart_result is None:
            cart_result = await self.scrape_cart(account_id, cookie_blob, account_status=account_status)
        if not cart_result.success:
            logger.warning(f"Cart unavailable for account {account_id}: {cart_result.error}")
            return ReconcileResult(failed=len(listings))

        return await self.reconciler.reconcile(
            account_id,
            cart_result.products,
            listings=listings,
            user_id=user_id,
        )

    async def _refuse_locked(self, account_id: int, account_status: Optional[str]) -> Optional[str]:
        if account_status is None:
            account_status = await self.repository.get_account_status(account_id)
        if account_status == AccountStatus.LOCKED.value:
            raise AccountLockedError(account_id)
        return account_status


# Global cart scraper instance
cart_scraper = CartScraper()
