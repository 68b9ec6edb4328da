"""Persistence operations used by the scraping engine."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cartwatch.db.models import (
    Account,
    AccountStatus,
    Listing,
    NotificationConfig,
    PriceSnapshot,
    utcnow,
)
from cartwatch.ingest.sku_keys import BASE_VARIANT_KEY, is_numeric_id

logger = logging.getLogger(__name__)


def _min_positive(values) -> Optional[Decimal]:
    positive = [Decimal(v) for v in values if v is not None and Decimal(v) > 0]
    return min(positive) if positive else None


class ListingRepository:
    """Accounts, listings, snapshots and notification configs.

    Every method opens its own short-lived session; returned ORM objects are
    detached (the factory is built with expire_on_commit=False).
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._factory = session_factory

    def _session_factory(self) -> AsyncSession:
        if self._factory is None:
            from cartwatch.db.session import AsyncSessionLocal

            self._factory = AsyncSessionLocal
        return self._factory()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_account(self, account_id: int) -> Optional[Account]:
        async with self._session_factory() as db:
            return await db.get(Account, account_id)

    async def get_account_status(self, account_id: int) -> Optional[str]:
        """Current stored status; None when the account does not exist."""
        async with self._session_factory() as db:
            result = await db.execute(select(Account.status).where(Account.id == account_id))
            return result.scalar_one_or_none()

    async def list_active_accounts(self) -> list[Account]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Account).where(Account.is_active.is_(True)).order_by(Account.id)
            )
            return list(result.scalars().all())

    async def update_account_status(
        self,
        account_id: int,
        status: AccountStatus | str,
        *,
        error: Optional[str] = None,
        error_count: Optional[int] = None,
        is_active: Optional[bool] = None,
    ) -> None:
        """Write the account's lifecycle state back after a run."""
        values: dict[str, Any] = {"status": AccountStatus(status).value}
        if error is not None:
            values["last_error"] = error
            values["last_error_at"] = utcnow()
        if error_count is not None:
            values["error_count"] = error_count
        if is_active is not None:
            values["is_active"] = is_active

        async with self._session_factory() as db:
            await db.execute(update(Account).where(Account.id == account_id).values(**values))
            await db.commit()

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def find_active_base_listings(self, account_id: int) -> list[Listing]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Listing)
                .where(
                    Listing.account_id == account_id,
                    Listing.is_active.is_(True),
                    Listing.variant_key == BASE_VARIANT_KEY,
                )
                .order_by(Listing.id)
            )
            return list(result.scalars().all())

    async def get_listing(self, listing_pk: int) -> Optional[Listing]:
        async with self._session_factory() as db:
            return await db.get(Listing, listing_pk)

    async def update_listing(self, listing_pk: int, **fields: Any) -> None:
        if not fields:
            return
        async with self._session_factory() as db:
            await db.execute(update(Listing).where(Listing.id == listing_pk).values(**fields))
            await db.commit()

    async def mark_listing_missing(
        self, listing_pk: int, message: str, checked_at: Optional[datetime] = None
    ) -> None:
        """Record that the listing was absent from the cart; prices stay untouched."""
        await self.update_listing(
            listing_pk,
            last_error=message,
            last_checked_at=checked_at or utcnow(),
        )

    async def ensure_base_listings(self, account_id: int) -> int:
        """Fold legacy per-variant rows into one __BASE__ row per listing.

        Returns:
            Number of base listings created
        """
        created = 0
        async with self._session_factory() as db:
            result = await db.execute(
                select(Listing)
                .where(Listing.account_id == account_id, Listing.is_active.is_(True))
                .order_by(Listing.id)
            )
            rows = list(result.scalars().all())

            base_ids = {row.listing_id for row in rows if row.variant_key == BASE_VARIANT_KEY}
            existing = await db.execute(
                select(Listing.listing_id).where(
                    Listing.account_id == account_id,
                    Listing.variant_key == BASE_VARIANT_KEY,
                )
            )
            base_ids.update(existing.scalars().all())

            legacy_groups: dict[str, list[Listing]] = {}
            for row in rows:
                if row.variant_key != BASE_VARIANT_KEY and row.listing_id not in base_ids:
                    legacy_groups.setdefault(row.listing_id, []).append(row)

            for listing_id, legacy in legacy_groups.items():
                first = legacy[0]
                base = Listing(
                    account_id=account_id,
                    user_id=first.user_id,
                    listing_id=listing_id,
                    variant_key=BASE_VARIANT_KEY,
                    url=first.url,
                    title=first.title,
                    image_url=first.image_url,
                    current_price=_min_positive(r.current_price for r in legacy),
                    original_price=_min_positive(r.original_price for r in legacy),
                    sku_target=first.sku_target,
                    is_active=True,
                    last_checked_at=max(
                        (r.last_checked_at for r in legacy if r.last_checked_at), default=None
                    ),
                )
                db.add(base)
                await db.flush()

                variants = []
                for row in legacy:
                    variants.append(
                        {
                            "variant_id": row.variant_key if is_numeric_id(row.variant_key) else "",
                            "sku_properties": "" if is_numeric_id(row.variant_key) else row.variant_key,
                            "vid_path": "",
                            "selections": [],
                            "final_price": float(row.current_price) if row.current_price is not None else None,
                            "original_price": float(row.original_price) if row.original_price is not None else None,
                            "thumbnail_url": row.image_url,
                        }
                    )
                    row.is_active = False

                db.add(
                    PriceSnapshot(
                        listing_pk=base.id,
                        account_id=account_id,
                        final_price=base.current_price,
                        original_price=base.original_price,
                        raw_data={
                            "listing_id": listing_id,
                            "source": "cart_migrated",
                            "variants": variants,
                        },
                    )
                )
                created += 1

            if created:
                await db.commit()
                logger.info(f"Migrated {created} legacy listing group(s) to base records for account {account_id}")

        return created

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def latest_snapshot(self, listing_pk: int) -> Optional[PriceSnapshot]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(PriceSnapshot)
                .where(PriceSnapshot.listing_pk == listing_pk)
                .order_by(PriceSnapshot.captured_at.desc(), PriceSnapshot.id.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def create_snapshot(
        self,
        listing_pk: int,
        *,
        account_id: Optional[int],
        final_price: Optional[Decimal],
        original_price: Optional[Decimal],
        raw_data: dict,
        captured_at: Optional[datetime] = None,
    ) -> PriceSnapshot:
        snapshot = PriceSnapshot(
            listing_pk=listing_pk,
            account_id=account_id,
            final_price=final_price,
            original_price=original_price,
            raw_data=raw_data,
            captured_at=captured_at or utcnow(),
        )
        async with self._session_factory() as db:
            db.add(snapshot)
            await db.commit()
            await db.refresh(snapshot)
        return snapshot

    async def list_snapshots(self, listing_pk: int) -> list[PriceSnapshot]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(PriceSnapshot)
                .where(PriceSnapshot.listing_pk == listing_pk)
                .order_by(PriceSnapshot.captured_at, PriceSnapshot.id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Notification configs
    # ------------------------------------------------------------------

    async def get_notification_configs(self, user_id: Optional[int]) -> list[NotificationConfig]:
        """Enabled notification configs for the listing's owner."""
        if user_id is None:
            return []
        async with self._session_factory() as db:
            result = await db.execute(
                select(NotificationConfig).where(
                    NotificationConfig.user_id == user_id,
                    NotificationConfig.enabled.is_(True),
                )
            )
            return list(result.scalars().all())


listing_repository = ListingRepository()
