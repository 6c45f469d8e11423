"""
Tests for overdue detection and advisory late fees
"""

import pytest
from datetime import date
from decimal import Decimal

from dues_ledger.currency import Currency
from dues_ledger.errors import ValidationError
from dues_ledger.late_fees import (
    LateFeeCalculator, LateFeeSettings, compound_fee, simple_fee,
    register_day_count, register_fee_strategy
)


DUE_DATE = date(2024, 1, 31)


class TestOverdue:
    """Overdue flag and day count"""

    def setup_method(self):
        self.calculator = LateFeeCalculator(Currency.TRY)

    def test_not_overdue_on_due_date(self):
        assert not self.calculator.is_overdue("pending", DUE_DATE, DUE_DATE)
        assert self.calculator.overdue_days("pending", DUE_DATE, DUE_DATE) == 0

    def test_overdue_after_due_date(self):
        today = date(2024, 2, 10)
        assert self.calculator.is_overdue("pending", DUE_DATE, today)
        assert self.calculator.is_overdue("partial", DUE_DATE, today)
        assert self.calculator.overdue_days("partial", DUE_DATE, today) == 10

    def test_settled_dues_are_never_overdue(self):
        today = date(2024, 6, 1)
        assert not self.calculator.is_overdue("paid", DUE_DATE, today)
        assert not self.calculator.is_overdue("cancelled", DUE_DATE, today)
        assert self.calculator.overdue_days("paid", DUE_DATE, today) == 0


class TestEstimatedLateFee:
    """Fee strategies and day-count rules"""

    def setup_method(self):
        self.calculator = LateFeeCalculator(Currency.TRY)
        self.today = date(2024, 2, 10)  # 10 days overdue

    def fee(self, settings, remaining="1000.00", status="pending", today=None):
        return self.calculator.estimated_late_fee(
            Decimal(remaining), status, DUE_DATE, settings, today or self.today
        )

    def test_no_settings_means_no_fee(self):
        assert self.fee(None) is None

    def test_simple_fee(self):
        settings = LateFeeSettings(rate=Decimal("0.001"))
        assert self.fee(settings) == Decimal("10.00")

    def test_zero_when_not_overdue(self):
        settings = LateFeeSettings(rate=Decimal("0.001"))
        assert self.fee(settings, today=DUE_DATE) == Decimal("0.00")
        assert self.fee(settings, status="paid") == Decimal("0.00")

    def test_zero_inside_grace_window(self):
        settings = LateFeeSettings(rate=Decimal("0.001"), grace_days=10)
        assert self.fee(settings) == Decimal("0.00")

    def test_grace_exceeded_charges_every_day_by_default(self):
        settings = LateFeeSettings(rate=Decimal("0.001"), grace_days=3)
        assert self.fee(settings) == Decimal("10.00")

    def test_after_grace_day_count(self):
        settings = LateFeeSettings(rate=Decimal("0.001"), grace_days=3, day_count="after_grace")
        assert self.fee(settings) == Decimal("7.00")

    def test_compound_fee(self):
        settings = LateFeeSettings(rate=Decimal("0.001"), strategy="compound")
        # 1000 × (1.001^10 − 1) = 10.0451...
        assert self.fee(settings) == Decimal("10.05")

    def test_fee_uses_remaining_amount(self):
        settings = LateFeeSettings(rate=Decimal("0.001"))
        assert self.fee(settings, remaining="250.00", status="partial") == Decimal("2.50")
        assert self.fee(settings, remaining="0") == Decimal("0.00")

    def test_fee_quantized_to_currency(self):
        calculator = LateFeeCalculator(Currency.JPY)
        settings = LateFeeSettings(rate=Decimal("0.0013"))
        fee = calculator.estimated_late_fee(Decimal("1000"), "pending", DUE_DATE, settings, self.today)
        assert fee == Decimal("13")

    def test_custom_strategy_registration(self):
        register_fee_strategy("flat_per_day", lambda remaining, rate, days: Decimal("5") * days)
        register_day_count("weeks", lambda overdue, grace: overdue // 7)

        settings = LateFeeSettings(rate=Decimal("0"), strategy="flat_per_day", day_count="weeks")
        assert self.fee(settings) == Decimal("5.00")


class TestLateFeeSettings:
    """Validation and persistence of organization settings"""

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValidationError):
            LateFeeSettings(rate=Decimal("0.001"), strategy="exotic")

    def test_unknown_day_count_rejected(self):
        with pytest.raises(ValidationError):
            LateFeeSettings(rate=Decimal("0.001"), day_count="lunar")

    def test_negative_values_rejected(self):
        with pytest.raises(ValidationError):
            LateFeeSettings(rate=Decimal("-0.001"))
        with pytest.raises(ValidationError):
            LateFeeSettings(rate=Decimal("0.001"), grace_days=-1)

    def test_round_trip(self):
        settings = LateFeeSettings(rate=Decimal("0.002"), grace_days=5, strategy="compound",
                                   day_count="after_grace")
        assert LateFeeSettings.from_dict(settings.to_dict()) == settings

    def test_formulas(self):
        assert simple_fee(Decimal("100"), Decimal("0.01"), 3) == Decimal("3.00")
        assert compound_fee(Decimal("100"), Decimal("0.1"), 2) == Decimal("21.00")
