"""
Unit Dues Module

The obligation record shared by the accrual engine (which creates rows in
bulk) and the payment ledger (which mutates them one at a time). Every
mutation goes through a versioned compare-and-swap so racing writers cannot
both apply.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Generic, Iterable, List, Optional, Sequence, TypeVar

from .currency import ZERO
from .errors import NotFoundError
from .storage import StorageInterface, StorageRecord


class UnitDueStatus(Enum):
    """Payment state of a unit due"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    CANCELLED = "cancelled"


def status_for(amount: Decimal, paid_amount: Decimal) -> UnitDueStatus:
    """Status implied by the amounts; cancellation is tracked separately"""
    if paid_amount >= amount:
        return UnitDueStatus.PAID
    if paid_amount > ZERO:
        return UnitDueStatus.PARTIAL
    return UnitDueStatus.PENDING


@dataclass
class UnitDue(StorageRecord):
    """One obligation for one unit, one due type, one period"""
    organization_id: str
    period_id: str
    unit_id: str
    due_type_id: str
    amount: Decimal
    paid_amount: Decimal = ZERO
    status: UnitDueStatus = UnitDueStatus.PENDING
    accrual_run_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    version: int = 1

    @property
    def remaining_amount(self) -> Decimal:
        """What is still owed; never negative and zero once cancelled"""
        if self.status == UnitDueStatus.CANCELLED:
            return ZERO
        return max(self.amount - self.paid_amount, ZERO)

    @property
    def overpaid_amount(self) -> Decimal:
        return max(self.paid_amount - self.amount, ZERO)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UnitDue':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            period_id=data['period_id'],
            unit_id=data['unit_id'],
            due_type_id=data['due_type_id'],
            amount=Decimal(data['amount']),
            paid_amount=Decimal(data['paid_amount']),
            status=UnitDueStatus(data['status']),
            accrual_run_id=data.get('accrual_run_id'),
            cancelled_at=datetime.fromisoformat(data['cancelled_at']) if data.get('cancelled_at') else None,
            cancelled_by=data.get('cancelled_by'),
            version=data.get('version', 1),
        )


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One page of a filtered listing"""
    items: List[T]
    total_count: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total_count + self.page_size - 1) // self.page_size


class UnitDueRepository:
    """Table access for unit dues"""

    UNIQUE_KEY = ("period_id", "unit_id", "due_type_id")

    def __init__(self, storage: StorageInterface, table: str = "unit_dues"):
        self.storage = storage
        self.table = table
        # Double accrual is stopped here even if two confirms race past the status check
        self.storage.ensure_unique(self.table, self.UNIQUE_KEY)

    def find(self, unit_due_id: str) -> Optional[UnitDue]:
        data = self.storage.load(self.table, unit_due_id)
        return UnitDue.from_dict(data) if data else None

    def get(self, unit_due_id: str) -> UnitDue:
        unit_due = self.find(unit_due_id)
        if not unit_due:
            raise NotFoundError(f"Unit due {unit_due_id} not found")
        return unit_due

    def for_period(self, period_id: str, status: Optional[UnitDueStatus] = None) -> List[UnitDue]:
        filters: Dict[str, Any] = {"period_id": period_id}
        if status is not None:
            filters["status"] = status.value
        return [UnitDue.from_dict(d) for d in self.storage.find(self.table, filters)]

    def for_organization(self, organization_id: str) -> List[UnitDue]:
        return [
            UnitDue.from_dict(d)
            for d in self.storage.find(self.table, {"organization_id": organization_id})
        ]

    def for_units(self, organization_id: str, unit_ids: Iterable[str]) -> List[UnitDue]:
        wanted = set(unit_ids)
        return [d for d in self.for_organization(organization_id) if d.unit_id in wanted]

    def count_for_period(self, period_id: str) -> int:
        return len(self.storage.find(self.table, {"period_id": period_id}))

    def exists_for_due_type(self, due_type_id: str) -> bool:
        return bool(self.storage.find(self.table, {"due_type_id": due_type_id}))

    def insert_batch(self, unit_dues: Sequence[UnitDue]) -> None:
        """Insert new rows all or nothing; raises DuplicateKeyError on collision"""
        self.storage.insert_many(self.table, [(d.id, d.to_dict()) for d in unit_dues])

    def delete_for_run(self, accrual_run_id: str) -> int:
        """Remove every row written by one accrual attempt"""
        ids = [d['id'] for d in self.storage.find(self.table, {"accrual_run_id": accrual_run_id})]
        return self.storage.delete_many(self.table, ids) if ids else 0

    def delete_for_period(self, period_id: str) -> int:
        ids = [d['id'] for d in self.storage.find(self.table, {"period_id": period_id})]
        return self.storage.delete_many(self.table, ids) if ids else 0

    def compare_and_save(self, current: UnitDue, **changes: Any) -> Optional[UnitDue]:
        """
        Apply changes if nobody else modified the row since ``current`` was read.

        Returns:
            The saved UnitDue, or None if the stored version moved on
        """
        updated = replace(
            current,
            version=current.version + 1,
            updated_at=datetime.now(timezone.utc),
            **changes
        )
        saved = self.storage.update_if(
            self.table, current.id, {"version": current.version}, updated.to_dict()
        )
        return updated if saved else None
