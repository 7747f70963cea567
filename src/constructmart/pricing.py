"""Order pricing: tax, delivery charges and platform fee."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

from .models import AppSettings

CENT = Decimal("0.01")

# Order values shown by the delivery preview
PREVIEW_ORDER_VALUES = (100, 250, 500, 750, 1000, 1500, 2000)


def to_money(value: float | int | str | Decimal) -> Decimal:
    """Round a monetary amount half-up to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def line_total(quantity: int, unit_price: float) -> float:
    """Total price of an order line, rounded to cents."""
    return float(to_money(Decimal(str(unit_price)) * quantity))


@dataclass(frozen=True)
class PricingLine:
    """A priced cart or order line."""

    quantity: int
    unit_price: float
    weight: float = 0.0

    @property
    def total_price(self) -> Decimal:
        return to_money(Decimal(str(self.unit_price)) * self.quantity)


@dataclass
class PricingTotals:
    """Server-computed totals.

    Each component is rounded to cents before summing, so
    ``total_amount == subtotal + tax + delivery_charge + platform_fee`` holds exactly.
    """

    subtotal: Decimal
    tax: Decimal
    delivery_charge: Decimal
    platform_fee: Decimal
    total_weight: float
    breakdown: dict[str, Any]

    @property
    def total_amount(self) -> Decimal:
        return self.subtotal + self.tax + self.delivery_charge + self.platform_fee

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtotal": float(self.subtotal),
            "tax": float(self.tax),
            "delivery_charge": float(self.delivery_charge),
            "platform_fee": float(self.platform_fee),
            "total_amount": float(self.total_amount),
            "total_weight": self.total_weight,
            "breakdown": self.breakdown,
        }


class PricingCalculator:
    """Calculates order totals from the current AppSettings."""

    def __init__(self, settings: AppSettings):
        self.settings = settings

    def delivery_charge(
        self,
        subtotal: float | Decimal,
        total_weight: float = 0.0,
        distance: float = 0.0,
    ) -> Decimal:
        """Delivery charge for the configured delivery type."""
        config = self.settings.delivery_config
        subtotal = Decimal(str(subtotal))

        if config.type == "fixed":
            charge = Decimal(str(config.fixed_charge))
        elif config.type == "threshold":
            if subtotal >= Decimal(str(config.free_delivery_threshold)):
                charge = Decimal("0")
            else:
                charge = Decimal(str(config.charge_for_below_threshold))
        elif config.type == "distance":
            excess = Decimal(str(distance)) - Decimal(str(config.base_distance))
            charge = max(Decimal("0"), excess) * Decimal(str(config.per_km_rate))
        elif config.type == "weight":
            excess = Decimal(str(total_weight)) - Decimal(str(config.free_weight_limit))
            charge = max(Decimal("0"), excess) * Decimal(str(config.per_kg_rate))
        else:
            charge = Decimal(str(config.charge_for_below_threshold))

        return to_money(charge)

    def tax(self, subtotal: float | Decimal) -> Decimal:
        return to_money(Decimal(str(subtotal)) * Decimal(str(self.settings.tax_rate)))

    def platform_fee(self, subtotal: float | Decimal) -> Decimal:
        return to_money(
            Decimal(str(subtotal)) * Decimal(str(self.settings.platform_fee_rate))
        )

    def subtotal(self, lines: Iterable[PricingLine]) -> Decimal:
        return sum((line.total_price for line in lines), Decimal("0.00"))

    def order_totals(self, lines: Iterable[PricingLine], distance: float = 0.0) -> PricingTotals:
        """Compute the complete totals for a set of lines."""
        lines = list(lines)
        subtotal = self.subtotal(lines)
        total_weight = sum(line.weight * line.quantity for line in lines)

        return PricingTotals(
            subtotal=subtotal,
            tax=self.tax(subtotal),
            delivery_charge=self.delivery_charge(subtotal, total_weight, distance),
            platform_fee=self.platform_fee(subtotal),
            total_weight=total_weight,
            breakdown={
                "tax_rate": self.settings.tax_rate,
                "platform_fee_rate": self.settings.platform_fee_rate,
                "delivery_config": self.settings.delivery_config.to_dict(),
                "minimum_order_value": self.settings.minimum_order_value,
            },
        )

    def meets_minimum(self, subtotal: float | Decimal) -> bool:
        return to_money(subtotal) >= to_money(self.settings.minimum_order_value)

    def delivery_preview(
        self, order_values: Iterable[float] = PREVIEW_ORDER_VALUES
    ) -> list[dict[str, float]]:
        """Delivery charge and tax at sample order values."""
        preview = []
        for value in order_values:
            delivery = self.delivery_charge(value)
            tax = self.tax(value)
            preview.append(
                {
                    "order_value": float(value),
                    "delivery_charge": float(delivery),
                    "tax": float(tax),
                    "total": float(to_money(value) + delivery + tax),
                }
            )
        return preview
