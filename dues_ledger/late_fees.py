"""
Overdue & Late-Fee Module

Read-time computation of the overdue flag and an advisory late fee. Nothing
here is stored: the inputs are a due's remaining balance and status, its
period's due date, and the organization's late-fee settings.

Organizations differ on how late fees accrue, so both the fee formula and the
way overdue days are counted are looked up by name in registries that callers
can extend.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from .currency import Currency, ZERO, quantize
from .errors import ValidationError

# (remaining_amount, rate, chargeable_days) -> fee
FeeStrategy = Callable[[Decimal, Decimal, int], Decimal]
# (overdue_days, grace_days) -> chargeable_days
DayCountRule = Callable[[int, int], int]


def simple_fee(remaining: Decimal, rate: Decimal, days: int) -> Decimal:
    """remaining × rate × days"""
    return remaining * rate * Decimal(days)


def compound_fee(remaining: Decimal, rate: Decimal, days: int) -> Decimal:
    """remaining × ((1 + rate)^days − 1), compounding daily"""
    return remaining * ((Decimal('1') + rate) ** days - Decimal('1'))


def count_from_due_date(overdue_days: int, grace_days: int) -> int:
    """Once the grace window is exceeded every overdue day is charged"""
    return overdue_days


def count_after_grace(overdue_days: int, grace_days: int) -> int:
    """Only the days beyond the grace window are charged"""
    return max(overdue_days - grace_days, 0)


_FEE_STRATEGIES: Dict[str, FeeStrategy] = {
    "simple": simple_fee,
    "compound": compound_fee,
}

_DAY_COUNT_RULES: Dict[str, DayCountRule] = {
    "from_due_date": count_from_due_date,
    "after_grace": count_after_grace,
}


def register_fee_strategy(name: str, strategy: FeeStrategy) -> None:
    """Make a custom fee formula available to LateFeeSettings.strategy"""
    _FEE_STRATEGIES[name] = strategy


def register_day_count(name: str, rule: DayCountRule) -> None:
    """Make a custom day-count rule available to LateFeeSettings.day_count"""
    _DAY_COUNT_RULES[name] = rule


def get_fee_strategy(name: str) -> FeeStrategy:
    try:
        return _FEE_STRATEGIES[name]
    except KeyError:
        raise ValidationError(f"Unknown late fee strategy: {name}")


def get_day_count(name: str) -> DayCountRule:
    try:
        return _DAY_COUNT_RULES[name]
    except KeyError:
        raise ValidationError(f"Unknown overdue day-count rule: {name}")


@dataclass(frozen=True)
class LateFeeSettings:
    """Organization-level late fee policy"""
    rate: Decimal                      # per day, e.g. Decimal('0.001') for 0.1%
    grace_days: int = 0
    strategy: str = "simple"
    day_count: str = "from_due_date"

    def __post_init__(self):
        if not isinstance(self.rate, Decimal):
            object.__setattr__(self, 'rate', Decimal(str(self.rate)))
        if self.rate < ZERO:
            raise ValidationError("Late fee rate cannot be negative")
        if self.grace_days < 0:
            raise ValidationError("Grace days cannot be negative")
        get_fee_strategy(self.strategy)
        get_day_count(self.day_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rate": str(self.rate),
            "grace_days": self.grace_days,
            "strategy": self.strategy,
            "day_count": self.day_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LateFeeSettings':
        return cls(
            rate=Decimal(data["rate"]),
            grace_days=int(data.get("grace_days", 0)),
            strategy=data.get("strategy", "simple"),
            day_count=data.get("day_count", "from_due_date"),
        )


# Statuses that can never be overdue
SETTLED_STATUSES = frozenset({"paid", "cancelled"})


class LateFeeCalculator:
    """Derives overdue state and estimated late fees"""

    def __init__(self, currency: Currency):
        self.currency = currency

    def is_overdue(self, status: str, due_date: date, today: date) -> bool:
        return status not in SETTLED_STATUSES and today > due_date

    def overdue_days(self, status: str, due_date: date, today: date) -> int:
        if not self.is_overdue(status, due_date, today):
            return 0
        return (today - due_date).days

    def estimated_late_fee(
        self,
        remaining_amount: Decimal,
        status: str,
        due_date: date,
        settings: Optional[LateFeeSettings],
        today: date
    ) -> Optional[Decimal]:
        """
        Advisory late fee for one due.

        Returns:
            None when the organization has no late-fee policy, zero while
            the due is not overdue or still inside the grace window.
        """
        if settings is None:
            return None

        days = self.overdue_days(status, due_date, today)
        if days <= settings.grace_days or remaining_amount <= ZERO:
            return quantize(ZERO, self.currency)

        chargeable_days = get_day_count(settings.day_count)(days, settings.grace_days)
        if chargeable_days <= 0:
            return quantize(ZERO, self.currency)

        fee = get_fee_strategy(settings.strategy)(remaining_amount, settings.rate, chargeable_days)
        return quantize(max(fee, ZERO), self.currency)
