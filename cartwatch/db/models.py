"""SQLAlchemy database models."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class AccountStatus(str, Enum):
    """Lifecycle state of a site account."""

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    CAPTCHA = "CAPTCHA"
    LOCKED = "LOCKED"
    COOLDOWN = "COOLDOWN"


class TriggerType(str, Enum):
    """How a subscriber's price-drop threshold is interpreted."""

    AMOUNT = "AMOUNT"
    PERCENT = "PERCENT"


class Account(Base):
    """Site account whose browser session owns a cart."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # Owner, routes notifications
    cookies: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Encrypted JSON cookie array
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=AccountStatus.IDLE.value, nullable=False
    )
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    listings: Mapped[list["Listing"]] = relationship("Listing", back_populates="account")


class Listing(Base):
    """Tracked product; the __BASE__ variant row tracks the cheapest SKU."""

    __tablename__ = "listings"
    __table_args__ = (
        UniqueConstraint("account_id", "listing_id", "variant_key", name="uq_listing_account_variant"),
        Index("ix_listings_account_active", "account_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, ForeignKey("accounts.id"), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    listing_id: Mapped[str] = mapped_column(String(32), nullable=False)  # Site-native item id
    variant_key: Mapped[str] = mapped_column(String(255), default="__BASE__", nullable=False)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    current_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    original_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    sku_target: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # Desired SKUs in cart
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    account: Mapped["Account"] = relationship("Account", back_populates="listings")
    snapshots: Mapped[list["PriceSnapshot"]] = relationship(
        "PriceSnapshot", back_populates="listing", order_by="PriceSnapshot.captured_at"
    )


class PriceSnapshot(Base):
    """Append-only price observation with the per-variant detail."""

    __tablename__ = "price_snapshots"
    __table_args__ = (Index("ix_snapshots_listing_captured", "listing_pk", "captured_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_pk: Mapped[int] = mapped_column(Integer, ForeignKey("listings.id"), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    final_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    original_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    # {"listing_id": ..., "source": "cart", "variants": [...]}
    raw_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    listing: Mapped["Listing"] = relationship("Listing", back_populates="snapshots")


class NotificationConfig(Base):
    """Per-user price notification settings."""

    __tablename__ = "notification_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    trigger_type: Mapped[str] = mapped_column(
        String(16), default=TriggerType.AMOUNT.value, nullable=False
    )
    trigger_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    notify_on_price_up: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Channels
    webhook_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Generic JSON POST
    discord_webhook_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    telegram_bot_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
