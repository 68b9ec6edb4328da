"""Reconcile cart line items against tracked listings and their history."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Optional

from cartwatch import metrics
from cartwatch.db.models import Listing, utcnow
from cartwatch.detect.price_drop import calculate_price_drop, should_emit_change
from cartwatch.ingest.cart_extractor import CartProduct
from cartwatch.ingest.sku_keys import normalize_sku_properties, selections_vid_path, variant_key
from cartwatch.logging_config import get_logger

logger = logging.getLogger(__name__)

MISSING_IN_CART_MESSAGE = "Listing not found in cart, please re-add it"
NO_PRICE_MESSAGE = "No valid price found in cart"


@dataclass
class ReconcileResult:
    updated: int = 0
    failed: int = 0
    missing: int = 0
    missing_listing_ids: list[str] = field(default_factory=list)


def _to_float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def min_positive_price(values: Iterable[Any]) -> Optional[Decimal]:
    """Smallest strictly positive price, or None when there is none."""
    prices = []
    for value in values:
        if value is None:
            continue
        price = Decimal(str(value))
        if price.is_finite() and price > 0:
            prices.append(price)
    return min(prices) if prices else None


def index_previous_variants(raw_data: Optional[dict]) -> dict[str, dict]:
    """Index a snapshot's variants by every key a cart entry may match on."""
    variants = (raw_data or {}).get("variants") or []
    index: dict[str, dict] = {}
    for variant in variants:
        if not isinstance(variant, dict):
            continue
        keys = [
            variant_key(variant.get("variant_id"), variant.get("sku_properties")),
            str(variant.get("variant_id") or "").strip(),
            normalize_sku_properties(variant.get("sku_properties")),
            str(variant.get("vid_path") or "").strip(),
        ]
        for key in keys:
            if key and key not in index:
                index[key] = variant
    return index


def build_variants(cart_items: list[CartProduct], previous: dict[str, dict]) -> list[dict]:
    """Merge fresh cart entries with the previous snapshot's variant detail.

    Prices come from the cart; selections and the value-id path survive
    from history because the cart page does not expose them.
    """
    variants = []
    for item in cart_items:
        prev = (
            previous.get(item.variant_key)
            or previous.get(item.variant_id)
            or previous.get(item.sku_properties)
            or {}
        )
        selections = prev.get("selections") if isinstance(prev.get("selections"), list) else []
        vid_path = prev.get("vid_path")
        if not isinstance(vid_path, str):
            vid_path = selections_vid_path(selections)

        variants.append(
            {
                "variant_id": item.variant_id or None,
                "sku_properties": item.sku_properties or None,
                "vid_path": vid_path,
                "selections": selections,
                "final_price": _to_float(item.final_price),
                "original_price": _to_float(item.original_price),
                "thumbnail_url": item.image_url or prev.get("thumbnail_url"),
            }
        )
    return variants


class PriceReconciler:
    """Turns a cart scrape into listing updates, snapshots and change events."""

    def __init__(self, repository=None, notifier=None, live_updates=None):
        if repository is None:
            from cartwatch.db.repository import listing_repository as repository
        if notifier is None:
            from cartwatch.notify.notifier import price_notifier as notifier
        if live_updates is None:
            from cartwatch.notify.live_updates import live_updates
        self.repository = repository
        self.notifier = notifier
        self.live_updates = live_updates

    async def reconcile(
        self,
        account_id: int,
        cart_products: list[CartProduct],
        listings: Optional[list[Listing]] = None,
        user_id: Optional[int] = None,
    ) -> ReconcileResult:
        """Apply one cart scrape to every active base listing of the account."""
        result = ReconcileResult()
        if listings is None:
            listings = await self.repository.find_active_base_listings(account_id)
        if not listings:
            logger.info(f"No monitored listings for account {account_id}")
            return result

        by_listing: dict[str, list[CartProduct]] = {}
        for product in cart_products:
            by_listing.setdefault(product.listing_id, []).append(product)

        for listing in listings:
            log = get_logger(__name__, account_id=account_id, listing_id=listing.listing_id)
            try:
                items = by_listing.get(listing.listing_id, [])
                if not items:
                    await self.repository.mark_listing_missing(listing.id, MISSING_IN_CART_MESSAGE)
                    result.missing += 1
                    result.missing_listing_ids.append(listing.listing_id)
                    metrics.listings_reconciled_total.labels(outcome="missing").inc()
                    log.info(f"Missing in cart: {listing.title} ({listing.listing_id})")
                    continue

                await self._apply(account_id, listing, items, user_id)
                result.updated += 1
                metrics.listings_reconciled_total.labels(outcome="updated").inc()
            except Exception as e:
                result.failed += 1
                metrics.listings_reconciled_total.labels(outcome="failed").inc()
                log.exception(f"Failed to update listing {listing.id}: {e}")

        logger.info(
            f"Reconcile for account {account_id}: updated={result.updated}, "
            f"missing={result.missing}, failed={result.failed}"
        )
        return result

    async def _apply(
        self,
        account_id: int,
        listing: Listing,
        items: list[CartProduct],
        user_id: Optional[int],
    ) -> None:
        old_price = listing.current_price
        latest = await self.repository.latest_snapshot(listing.id)
        previous = index_previous_variants(latest.raw_data if latest else None)

        variants = build_variants(items, previous)
        min_final = min_positive_price(v["final_price"] for v in variants)
        min_original = min_positive_price(v["original_price"] for v in variants)
        checked_at = utcnow()
        first = items[0]

        fields: dict[str, Any] = {
            "last_checked_at": checked_at,
            "original_price": min_original,
        }
        if first.title:
            fields["title"] = first.title
        if first.image_url:
            fields["image_url"] = first.image_url
        if min_final is not None:
            fields["current_price"] = min_final
            fields["last_error"] = None
        else:
            fields["last_error"] = NO_PRICE_MESSAGE
        await self.repository.update_listing(listing.id, **fields)

        await self.repository.create_snapshot(
            listing.id,
            account_id=account_id,
            final_price=min_final,
            original_price=min_original,
            raw_data={
                "listing_id": listing.listing_id,
                "source": "cart",
                "variants": variants,
            },
            captured_at=checked_at,
        )

        for key, value in fields.items():
            setattr(listing, key, value)

        if should_emit_change(old_price, min_final):
            await self._emit_change(listing, old_price, min_final, user_id)

        self.live_updates.notify_listing_update(
            listing.id,
            {
                "last_checked_at": checked_at,
                "current_price": min_final,
                "title": first.title or listing.title,
            },
        )

    async def _emit_change(
        self,
        listing: Listing,
        old_price: Decimal,
        new_price: Decimal,
        user_id: Optional[int],
    ) -> None:
        change = calculate_price_drop(old_price, new_price)
        metrics.record_price_change(float(old_price), float(new_price))
        try:
            configs = await self.repository.get_notification_configs(listing.user_id or user_id)
            if configs:
                await self.notifier.notify_price_change(listing, change, configs)
        except Exception as e:
            logger.error(f"Notification error for listing {listing.listing_id}: {e}")
