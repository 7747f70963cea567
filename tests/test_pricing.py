"""Tests for order pricing."""

from decimal import Decimal

from constructmart.models import AppSettings, DeliveryConfig
from constructmart.pricing import PricingCalculator, PricingLine, line_total, to_money


def calculator(**delivery) -> PricingCalculator:
    return PricingCalculator(AppSettings(delivery_config=DeliveryConfig(**delivery)))


class TestRounding:
    def test_half_up(self):
        assert to_money("2.675") == Decimal("2.68")
        assert to_money(0.125) == Decimal("0.13")

    def test_line_total(self):
        assert line_total(3, 33.335) == 100.01
        assert line_total(2, 50) == 100.0


class TestDeliveryCharge:
    def test_threshold_below(self):
        assert calculator().delivery_charge(999.99) == Decimal("100.00")

    def test_threshold_reached(self):
        assert calculator().delivery_charge(1000) == Decimal("0.00")

    def test_fixed(self):
        assert calculator(type="fixed", fixed_charge=40).delivery_charge(5000) == Decimal("40.00")

    def test_distance_beyond_base(self):
        calc = calculator(type="distance", per_km_rate=5, base_distance=5)
        assert calc.delivery_charge(100, distance=12) == Decimal("35.00")
        assert calc.delivery_charge(100, distance=3) == Decimal("0.00")

    def test_weight_beyond_free_limit(self):
        calc = calculator(type="weight", per_kg_rate=10, free_weight_limit=50)
        assert calc.delivery_charge(100, total_weight=62.5) == Decimal("125.00")
        assert calc.delivery_charge(100, total_weight=50) == Decimal("0.00")


class TestOrderTotals:
    def test_default_settings(self):
        totals = calculator().order_totals([PricingLine(2, 50)])

        assert totals.subtotal == Decimal("100.00")
        assert totals.tax == Decimal("18.00")
        assert totals.delivery_charge == Decimal("100.00")
        assert totals.platform_fee == Decimal("2.00")
        assert totals.total_amount == Decimal("220.00")

    def test_total_is_exact_sum_of_rounded_parts(self):
        totals = calculator().order_totals(
            [PricingLine(3, 33.335), PricingLine(7, 1.99), PricingLine(1, 0.05)]
        )
        parts = totals.subtotal + totals.tax + totals.delivery_charge + totals.platform_fee
        assert totals.total_amount == parts
        assert totals.to_dict()["total_amount"] == float(parts)

    def test_weight_is_per_unit(self):
        totals = calculator(type="weight").order_totals([PricingLine(3, 10, weight=20)])
        assert totals.total_weight == 60
        assert totals.delivery_charge == Decimal("100.00")

    def test_breakdown_records_settings(self):
        totals = calculator().order_totals([PricingLine(1, 500)])
        assert totals.breakdown["tax_rate"] == 0.18
        assert totals.breakdown["delivery_config"]["type"] == "threshold"


class TestMinimumOrder:
    def test_boundary(self):
        calc = PricingCalculator(AppSettings(minimum_order_value=100))
        assert not calc.meets_minimum(99.99)
        assert calc.meets_minimum(100)


class TestDeliveryPreview:
    def test_rows(self):
        preview = calculator().delivery_preview([500, 1000])
        assert preview == [
            {"order_value": 500.0, "delivery_charge": 100.0, "tax": 90.0, "total": 690.0},
            {"order_value": 1000.0, "delivery_charge": 0.0, "tax": 180.0, "total": 1180.0},
        ]
