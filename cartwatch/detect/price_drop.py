"""Price change calculation and subscriber threshold rules."""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from cartwatch.db.models import TriggerType


@dataclass(frozen=True)
class PriceChange:
    """Change between two prices. Positive amount means the price dropped."""

    old_price: Decimal
    new_price: Decimal
    amount: Decimal
    percent: Decimal

    @property
    def is_drop(self) -> bool:
        return self.new_price < self.old_price

    @property
    def is_increase(self) -> bool:
        return self.new_price > self.old_price


def calculate_price_drop(old_price, new_price) -> PriceChange:
    """Amount = old - new; percent is relative to the old price (0 when old <= 0)."""
    old = Decimal(str(old_price))
    new = Decimal(str(new_price))
    amount = old - new
    percent = (amount / old) * 100 if old > 0 else Decimal("0")
    return PriceChange(old_price=old, new_price=new, amount=amount, percent=percent)


@dataclass
class ThresholdRule:
    """A subscriber's notification threshold."""

    trigger_type: TriggerType = TriggerType.AMOUNT
    trigger_value: Decimal = Decimal("0")
    notify_on_price_up: bool = False

    @classmethod
    def from_config(cls, config) -> "ThresholdRule":
        return cls(
            trigger_type=TriggerType(config.trigger_type),
            trigger_value=Decimal(str(config.trigger_value or 0)),
            notify_on_price_up=bool(getattr(config, "notify_on_price_up", False)),
        )

    def _measure(self, change: PriceChange) -> Decimal:
        if self.trigger_type == TriggerType.PERCENT:
            return abs(change.percent)
        return abs(change.amount)

    def check(self, change: PriceChange) -> tuple[bool, str]:
        """
        Check if a price change should be delivered to this subscriber.

        Returns:
            Tuple of (triggered: bool, reason: str)
        """
        if change.is_drop:
            measured = self._measure(change)
            if measured >= self.trigger_value:
                unit = "%" if self.trigger_type == TriggerType.PERCENT else ""
                return True, f"Dropped {measured:.2f}{unit} (threshold {self.trigger_value}{unit})"
            return False, "Drop below threshold"

        if change.is_increase:
            if not self.notify_on_price_up:
                return False, "Price increases not subscribed"
            if self._measure(change) >= self.trigger_value:
                return True, f"Price rose to {change.new_price}"
            return False, "Increase below threshold"

        return False, "No change"


def should_emit_change(old_price: Optional[Decimal], new_price: Optional[Decimal]) -> bool:
    """A change event needs a known, positive previous and new price that differ."""
    if old_price is None or new_price is None:
        return False
    try:
        old = Decimal(str(old_price))
        new = Decimal(str(new_price))
    except (InvalidOperation, ValueError, TypeError):
        return False
    if not old.is_finite() or not new.is_finite():
        return False
    return new > 0 and old != new
