"""SKU acquisition: add a listing's missing variants to the account's cart.

A run has three phases:

1. Precheck. Collect the listing's variant keys already in the cart,
   scrolling the cart until the key count settles.
2. Selection. Pick which available variants to process, preferring ones
   already in the cart when only a target count is wanted.
3. Per-SKU add. Select every dimension, click add-to-cart and wait for a
   success signal. One automatic retry after reloading the product page.

The account lock is held for one page interaction at a time (the precheck,
one SKU, the final cart refresh), never across the gaps between SKUs. That
gap is the only place a pause requested by the scraper takes effect.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from cartwatch import metrics
from cartwatch.config import settings
from cartwatch.db.models import AccountStatus
from cartwatch.ingest.cart_extractor import CartProduct
from cartwatch.ingest.errors import (
    AccountLockedError,
    AddToCartRejectedError,
    AddToCartUnavailableError,
    AuthChallengeError,
    OptionDisabledError,
    OptionNotFoundError,
    SelectionIncompleteError,
    is_fatal_session_error,
)
from cartwatch.ingest.page_adapter import PageAdapter, PlaywrightPageAdapter
from cartwatch.ingest.session_manager import BrowserSession
from cartwatch.ingest.sku_tree import PageSkuTreeParser, SkuCombination, SkuSelection, SkuTreeParser
from cartwatch.logging_config import get_logger

logger = logging.getLogger(__name__)

SKU_ADDED = "added"
SKU_SKIPPED = "skipped"
SKU_FAILED = "failed"


@dataclass
class AcquisitionProgress:
    total: int = 0
    current: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    paused: bool = False


ProgressCallback = Callable[[AcquisitionProgress, str], None]


@dataclass
class AcquisitionOptions:
    headless: Optional[bool] = None
    target_count: int = 0  # 0 means every available variant
    existing_cart_keys: Optional[set[str]] = None  # Skip the cart precheck when given
    sku_delay_min: Optional[float] = None
    sku_delay_max: Optional[float] = None
    on_progress: Optional[ProgressCallback] = None
    refresh_cart_after: bool = True


@dataclass
class SkuAddResult:
    sku_id: str
    properties: str
    status: str
    error: Optional[str] = None
    selections: list[dict[str, str]] = field(default_factory=list)
    thumbnail_url: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (SKU_ADDED, SKU_SKIPPED)


@dataclass
class AcquisitionResult:
    listing_id: str
    total: int = 0
    added: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[SkuAddResult] = field(default_factory=list)
    duration: float = 0.0
    cart_products: list[CartProduct] = field(default_factory=list)


def cart_keys_for(products: Iterable[CartProduct], listing_id: str) -> set[str]:
    """Every key under which a listing's cart entries can be recognized."""
    keys: set[str] = set()
    for product in products:
        if product.listing_id != str(listing_id):
            continue
        for key in (product.variant_key, product.variant_id, product.sku_properties):
            if key:
                keys.add(key)
    return keys


def count_variants(products: Iterable[CartProduct], listing_id: str) -> int:
    return len({p.variant_key or p.cart_item_key for p in products if p.listing_id == str(listing_id)})


def is_in_cart(combination: SkuCombination, present_keys: set[str]) -> bool:
    return any(
        key and key in present_keys
        for key in (combination.key, combination.id, combination.normalized_properties)
    )


def select_skus(
    combinations: list[SkuCombination],
    present_keys: set[str],
    target_count: int = 0,
    rng: Optional[random.Random] = None,
) -> list[SkuCombination]:
    """Choose the variants a run will process.

    Only in-stock variants are eligible. With a target smaller than what is
    available, variants already in the cart count toward it first so a
    repeated run with the same target adds nothing.
    """
    rng = rng or random
    available = [c for c in combinations if c.stock > 0]

    if target_count <= 0 or target_count >= len(available):
        chosen = list(available)
        rng.shuffle(chosen)
        return chosen

    present = [c for c in available if is_in_cart(c, present_keys)]
    absent = [c for c in available if not is_in_cart(c, present_keys)]
    rng.shuffle(present)
    rng.shuffle(absent)
    chosen = present[:target_count]
    chosen.extend(absent[: target_count - len(chosen)])
    return chosen


def _selection_dicts(selections: list[SkuSelection]) -> list[dict[str, str]]:
    return [s.to_dict() for s in selections]


class SkuAcquisitionEngine:
    """Adds missing SKUs of a listing to an account's cart."""

    def __init__(
        self,
        sessions=None,
        locks=None,
        pauses=None,
        repository=None,
        adapter_factory: Optional[Callable[[BrowserSession], PageAdapter]] = None,
        sku_tree_factory: Optional[Callable[[BrowserSession], SkuTreeParser]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        if sessions is None:
            from cartwatch.ingest.session_manager import session_manager as sessions
        if locks is None:
            from cartwatch.worker.account_lock import account_locks as locks
        if pauses is None:
            from cartwatch.worker.pause_control import pause_coordinator as pauses
        if repository is None:
            from cartwatch.db.repository import listing_repository as repository
        self.sessions = sessions
        self.locks = locks
        self.pauses = pauses
        self.repository = repository
        self.adapter_factory = adapter_factory or PlaywrightPageAdapter
        self.sku_tree_factory = sku_tree_factory or (lambda session: PageSkuTreeParser(session.page))
        self._sleep = sleep
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def add_all_skus_to_cart(
        self,
        account_id: int,
        listing_id: str,
        cookie_blob: Optional[str] = None,
        options: Optional[AcquisitionOptions] = None,
        account_status: Optional[str] = None,
    ) -> AcquisitionResult:
        """Run a full acquisition for one listing.

        Per-SKU failures are recorded in the result; only authentication
        challenges (and a LOCKED account) raise. Without `account_status`
        the stored status is read before any page is touched.
        """
        if account_status is None:
            account_status = await self.repository.get_account_status(account_id)
        if account_status == AccountStatus.LOCKED.value:
            raise AccountLockedError(account_id)

        options = options or AcquisitionOptions()
        log = get_logger(__name__, account_id=account_id, listing_id=listing_id)
        started = time.monotonic()
        result = AcquisitionResult(listing_id=str(listing_id))
        progress = AcquisitionProgress()

        self.pauses.mark_acquisition_start(account_id)
        try:
            # Phase 1: what is already in the cart
            if options.existing_cart_keys is not None:
                present = set(options.existing_cart_keys)
                self._emit(options, progress, f"Using supplied cart index: {len(present)} key(s)")
            else:
                self._emit(options, progress, "Checking cart for variants already added...")
                present = await self._precheck(account_id, listing_id, cookie_blob, options)
                self._emit(options, progress, f"Cart precheck done: {len(present)} key(s) present")

            # Phase 2: variant tree
            self._emit(options, progress, "Opening product page...")
            async with self.locks.hold(account_id, "acquisition:tree"):
                session = await self._session(account_id, cookie_blob, options)
                adapter = self.adapter_factory(session)
                await adapter.goto_product(listing_id)
                await adapter.browse_product()
                tree = await self.sku_tree_factory(session).parse_sku_tree(listing_id)

            chosen = select_skus(tree.combinations, present, options.target_count, self._rng)
            to_add = sum(1 for c in chosen if not is_in_cart(c, present))
            progress.total = result.total = len(chosen)
            self._emit(
                options,
                progress,
                f"Processing {len(chosen)} SKU(s): {len(chosen) - to_add} already in cart, {to_add} to add",
            )

            # Phase 3: one SKU at a time
            for index, sku in enumerate(chosen):
                await self._honor_pause(account_id, options, progress)

                if is_in_cart(sku, present):
                    sku_result = SkuAddResult(
                        sku_id=sku.id,
                        properties=sku.properties,
                        status=SKU_SKIPPED,
                        selections=_selection_dicts(sku.selections),
                        thumbnail_url=sku.image_url,
                    )
                    touched_page = False
                else:
                    sku_result = await self._add_with_retry(account_id, listing_id, cookie_blob, sku, options)
                    touched_page = True
                    if sku_result.status == SKU_ADDED:
                        present.update(k for k in (sku.key, sku.normalized_properties) if k)

                self._record(result, progress, sku_result)
                progress.current = index + 1
                self._emit(
                    options,
                    progress,
                    f"{index + 1}/{len(chosen)} {sku_result.status}: {sku.properties}"
                    + (f" ({sku_result.error})" if sku_result.error else ""),
                )

                if index < len(chosen) - 1 and touched_page:
                    await self._honor_pause(account_id, options, progress)
                    await self._sleep(self._sku_delay(options))

            # Phase 4: read back prices
            if options.refresh_cart_after and result.total:
                self._emit(options, progress, "Refreshing cart...")
                result.cart_products = await self._refresh_cart(account_id, listing_id, cookie_blob, options)

            metrics.acquisition_runs_total.labels(status="success").inc()
        except AuthChallengeError:
            metrics.acquisition_runs_total.labels(status="auth_challenge").inc()
            raise
        except Exception:
            metrics.acquisition_runs_total.labels(status="error").inc()
            raise
        finally:
            self.pauses.mark_acquisition_end(account_id)
            result.duration = time.monotonic() - started

        log.info(
            f"Acquisition complete: added={result.added} skipped={result.skipped} "
            f"failed={result.failed} total={result.total} in {result.duration:.1f}s"
        )
        return result

    # ------------------------------------------------------------------
    # Precheck
    # ------------------------------------------------------------------

    async def _session(
        self, account_id: int, cookie_blob: Optional[str], options: AcquisitionOptions
    ) -> BrowserSession:
        return await self.sessions.get_or_create_session(account_id, cookie_blob, headless=options.headless)

    async def _precheck(
        self, account_id: int, listing_id: str, cookie_blob: Optional[str], options: AcquisitionOptions
    ) -> set[str]:
        async with self.locks.hold(account_id, "acquisition:precheck"):
            session = await self._session(account_id, cookie_blob, options)
            adapter = self.adapter_factory(session)
            await adapter.goto_cart()
            return await self.collect_cart_keys(adapter, listing_id)

    async def collect_cart_keys(self, adapter: PageAdapter, listing_id: str) -> set[str]:
        """Scroll the cart until the listing's variant count stops changing.

        Stops when the count is unchanged for the configured number of
        rounds, the UI-declared total is loaded, the end-of-list marker is
        visible, or scrolling stalls repeatedly.
        """
        keys: set[str] = set()
        last_count: Optional[int] = None
        stable_rounds = 0
        stalls = 0
        last_scroll: Optional[float] = None

        for round_number in range(settings.precheck_max_rounds):
            state = await adapter.read_cart_scan_state()
            keys.update(cart_keys_for(state.products, listing_id))
            count = count_variants(state.products, listing_id)

            if count == last_count:
                stable_rounds += 1
            else:
                stable_rounds = 0
                last_count = count

            if stable_rounds >= settings.precheck_stable_rounds:
                break
            if state.ui_total is not None and len(state.products) >= state.ui_total:
                break
            if state.end_visible:
                break

            if last_scroll is not None and state.scroll_y <= last_scroll:
                stalls += 1
                if stalls >= settings.precheck_max_stalls:
                    logger.info(f"Cart scroll stalled at {state.scroll_y}, stopping precheck")
                    break
                await self._sleep(self._rng.uniform(0.8, 1.6))
                await adapter.scroll_cart(-self._rng.randint(60, 160))
            else:
                stalls = 0
            last_scroll = state.scroll_y

            await adapter.scroll_cart(self._rng.randint(320, 760))
            logger.debug(f"Precheck round {round_number + 1}: {count} variant(s) of {listing_id}")

        return keys

    # ------------------------------------------------------------------
    # Per-SKU state machine
    # ------------------------------------------------------------------

    async def _add_with_retry(
        self,
        account_id: int,
        listing_id: str,
        cookie_blob: Optional[str],
        sku: SkuCombination,
        options: AcquisitionOptions,
    ) -> SkuAddResult:
        last_error: Optional[BaseException] = None

        for attempt in (1, 2):
            async with self.locks.hold(account_id, "acquisition:sku"):
                session = await self._session(account_id, cookie_blob, options)
                adapter = self.adapter_factory(session)
                try:
                    if attempt == 1:
                        await adapter.goto_product(listing_id)
                    else:
                        await adapter.reset_to_product(listing_id)
                    await self.add_single_sku(adapter, sku)
                    metrics.sku_adds_total.labels(status=SKU_ADDED).inc()
                    return SkuAddResult(
                        sku_id=sku.id,
                        properties=sku.properties,
                        status=SKU_ADDED,
                        selections=_selection_dicts(sku.selections),
                        thumbnail_url=sku.image_url,
                    )
                except AuthChallengeError:
                    raise
                except Exception as e:
                    last_error = e
                    logger.warning(f"Add attempt {attempt} failed for SKU {sku.id} ({sku.properties}): {e}")
                    await adapter.save_debug_artifacts(
                        "sku_attempt_failed",
                        {"listing_id": listing_id, "sku_id": sku.id, "attempt": attempt, "error": str(e)},
                    )
                    if is_fatal_session_error(e):
                        await self.sessions.dispose_session(account_id, reason="fatal")

        metrics.sku_adds_total.labels(status=SKU_FAILED).inc()
        return SkuAddResult(
            sku_id=sku.id,
            properties=sku.properties,
            status=SKU_FAILED,
            error=str(last_error) if last_error else "unknown error",
            selections=_selection_dicts(sku.selections),
        )

    async def add_single_sku(self, adapter: PageAdapter, sku: SkuCombination) -> None:
        """One add attempt: select, verify, click, confirm. Raises on failure."""
        await adapter.assert_not_auth_page("before add")
        await adapter.dismiss_obstructions()

        for selection in sku.selections:
            await self.select_option(adapter, selection, sku.id)

        missing = await adapter.missing_dimensions()
        if missing:
            raise SelectionIncompleteError(missing, sku.id)

        control = await adapter.find_add_to_cart()
        if control is None:
            raise AddToCartUnavailableError("Add-to-cart control not found", sku.id)
        if await adapter.is_add_to_cart_disabled(control):
            raise AddToCartUnavailableError("Add-to-cart control is disabled", sku.id)

        before = await adapter.read_cart_count()
        await adapter.click_add_to_cart(control)
        await adapter.assert_not_auth_page("after add click")

        if not await adapter.detect_success_signal(before, settings.add_to_cart_timeout_ms):
            reason = await adapter.read_failure_reason()
            if reason == "authentication challenge":
                await adapter.assert_not_auth_page("add rejected")
            raise AddToCartRejectedError(reason, sku.id)

        await adapter.dismiss_add_confirmation()

    async def select_option(self, adapter: PageAdapter, selection: SkuSelection, sku_id: str) -> None:
        option = await adapter.locate_option(selection)
        if option is None:
            raise OptionNotFoundError(selection.prop_name, selection.value_name, sku_id)
        if await adapter.is_option_disabled(option):
            raise OptionDisabledError(selection.prop_name, selection.value_name, sku_id)
        if await adapter.is_option_selected(selection):
            return

        for attempt in range(1, settings.option_click_attempts + 1):
            if attempt > 1:
                await adapter.dismiss_obstructions()
            await adapter.click_option(option)
            if await adapter.wait_option_selected(selection, settings.option_selected_timeout_ms):
                return

        # Pages without a selected-state marker land here; missing_dimensions() decides
        logger.debug(
            f"No selected-state signal for {selection.prop_name}={selection.value_name} "
            f"(value_id={selection.value_id})"
        )
        await adapter.save_debug_artifacts(
            "option_not_confirmed",
            {"value_id": selection.value_id, "prop_name": selection.prop_name, "value_name": selection.value_name},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _refresh_cart(
        self, account_id: int, listing_id: str, cookie_blob: Optional[str], options: AcquisitionOptions
    ) -> list[CartProduct]:
        async with self.locks.hold(account_id, "acquisition:refresh"):
            try:
                session = await self._session(account_id, cookie_blob, options)
                adapter = self.adapter_factory(session)
                await adapter.reload_cart()
                state = await adapter.read_cart_scan_state()
            except AuthChallengeError:
                raise
            except Exception as e:
                logger.warning(f"Cart refresh after acquisition failed: {e}")
                if is_fatal_session_error(e):
                    await self.sessions.dispose_session(account_id, reason="fatal")
                return []
        return [p for p in state.products if p.listing_id == str(listing_id)]

    async def _honor_pause(self, account_id: int, options: AcquisitionOptions, progress: AcquisitionProgress) -> None:
        if not self.pauses.is_pause_requested(account_id):
            return
        if not self.pauses.notify_paused_at_safe_point(account_id) and not self.pauses.is_paused(account_id):
            return

        progress.paused = True
        self._emit(options, progress, "Paused for cart scrape")
        await self.pauses.wait_until_resumed(
            account_id,
            poll_interval=settings.pause_poll_interval_seconds,
            on_waiting=lambda: self._emit(options, progress, "Waiting for cart scrape to finish..."),
        )
        progress.paused = False
        self._emit(options, progress, "Resumed")

    def _sku_delay(self, options: AcquisitionOptions) -> float:
        low = settings.sku_delay_min_seconds if options.sku_delay_min is None else options.sku_delay_min
        high = settings.sku_delay_max_seconds if options.sku_delay_max is None else options.sku_delay_max
        delay = self._rng.uniform(low, max(low, high))
        if self._rng.random() < settings.sku_long_pause_probability:
            delay += self._rng.uniform(settings.sku_long_pause_min_seconds, settings.sku_long_pause_max_seconds)
        return delay

    @staticmethod
    def _record(result: AcquisitionResult, progress: AcquisitionProgress, sku_result: SkuAddResult) -> None:
        result.results.append(sku_result)
        if sku_result.status == SKU_ADDED:
            result.added += 1
            progress.succeeded += 1
        elif sku_result.status == SKU_SKIPPED:
            result.skipped += 1
            progress.skipped += 1
            metrics.sku_adds_total.labels(status=SKU_SKIPPED).inc()
        else:
            result.failed += 1
            progress.failed += 1

    @staticmethod
    def _emit(options: AcquisitionOptions, progress: AcquisitionProgress, line: str) -> None:
        logger.info(line)
        if options.on_progress is None:
            return
        try:
            options.on_progress(progress, line)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")


# Global acquisition engine
sku_acquisition_engine = SkuAcquisitionEngine()
