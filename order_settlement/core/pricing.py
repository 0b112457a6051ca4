"""Tax and shipping policy applied to an order subtotal."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from order_settlement.config import Settings, get_settings
from order_settlement.core.money import apply_rate, parse_amount


@dataclass(frozen=True)
class PriceQuote:
    subtotal: Decimal
    tax: Decimal
    shipping_fee: Decimal

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax + self.shipping_fee


class PricingPolicy:
    """Percentage tax on the subtotal plus a flat shipping fee."""

    def __init__(self, tax_rate: Decimal, shipping_fee: Decimal):
        self.tax_rate = Decimal(tax_rate)
        self.shipping_fee = parse_amount(shipping_fee)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PricingPolicy":
        settings = settings or get_settings()
        return cls(tax_rate=settings.tax_rate, shipping_fee=settings.shipping_fee)

    def quote(self, subtotal: Decimal) -> PriceQuote:
        subtotal = parse_amount(subtotal)
        return PriceQuote(
            subtotal=subtotal,
            tax=apply_rate(subtotal, self.tax_rate),
            shipping_fee=self.shipping_fee,
        )
