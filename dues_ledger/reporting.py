"""
Dues Reporting Module

Read-side views assembled from the ledger tables: the enriched unit-due
listing shown on a period page, per-period and organization-wide collection
summaries, and the resident self-service views (my dues, my payments).
Overdue flags and late fees are computed here at read time.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .currency import Currency, ZERO
from .directory import OrganizationDirectory, Unit
from .due_types import DueTypeCatalog
from .errors import ValidationError
from .late_fees import LateFeeCalculator
from .payments import PaymentLedger
from .periods import DuesPeriod, PeriodLifecycleManager, PeriodStatus
from .permissions import Caller, Permission, require_permission
from .unit_dues import Page, UnitDue, UnitDueRepository, UnitDueStatus


@dataclass
class UnitDueView:
    """A unit due joined with its unit, due type and derived amounts"""
    id: str
    period_id: str
    unit_id: str
    unit_number: Optional[str]
    block_name: Optional[str]
    resident_name: Optional[str]
    due_type_id: str
    due_type_name: Optional[str]
    amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    status: UnitDueStatus
    is_overdue: bool
    overdue_days: int
    estimated_late_fee: Optional[Decimal]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "period_id": self.period_id,
            "unit_id": self.unit_id,
            "unit_number": self.unit_number,
            "block_name": self.block_name,
            "resident_name": self.resident_name,
            "due_type_id": self.due_type_id,
            "due_type_name": self.due_type_name,
            "amount": str(self.amount),
            "paid_amount": str(self.paid_amount),
            "remaining_amount": str(self.remaining_amount),
            "status": self.status.value,
            "is_overdue": self.is_overdue,
            "overdue_days": self.overdue_days,
            "estimated_late_fee": str(self.estimated_late_fee) if self.estimated_late_fee is not None else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class PeriodSummary:
    period: DuesPeriod
    total_dues: int
    paid_count: int
    total_amount: Decimal
    collected_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.period.id,
            "name": self.period.name,
            "start_date": self.period.start_date.isoformat(),
            "due_date": self.period.due_date.isoformat(),
            "status": self.period.status.value,
            "closed_at": self.period.closed_at.isoformat() if self.period.closed_at else None,
            "failure_reason": self.period.failure_reason,
            "total_dues": self.total_dues,
            "paid_count": self.paid_count,
            "total_amount": str(self.total_amount),
            "collected_amount": str(self.collected_amount),
        }


@dataclass
class DuesSummary:
    """Organization-wide collection totals"""
    total_pending_amount: Decimal
    total_pending_dues: int
    total_collected_amount: Decimal
    active_periods: int
    overdue_dues: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_pending_amount": str(self.total_pending_amount),
            "total_pending_dues": self.total_pending_dues,
            "total_collected_amount": str(self.total_collected_amount),
            "active_periods": self.active_periods,
            "overdue_dues": self.overdue_dues,
        }


@dataclass
class PeriodDetail:
    summary: PeriodSummary
    unit_dues: Page[UnitDueView]

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.summary.to_dict(),
            "unit_dues": {
                "items": [item.to_dict() for item in self.unit_dues.items],
                "total_count": self.unit_dues.total_count,
                "page": self.unit_dues.page,
                "page_size": self.unit_dues.page_size,
                "total_pages": self.unit_dues.total_pages,
            },
        }


@dataclass
class MyDue:
    """A resident's view of one of their dues"""
    view: UnitDueView
    period_name: str
    due_date: date

    def to_dict(self) -> Dict[str, Any]:
        data = self.view.to_dict()
        data["period_name"] = self.period_name
        data["due_date"] = self.due_date.isoformat()
        data["calculated_late_fee"] = data.pop("estimated_late_fee")
        return data


@dataclass
class MyPayment:
    """A receipt issued for one of the caller's units"""
    id: str
    receipt_number: str
    amount: Decimal
    paid_at: datetime
    payment_method: str
    period_name: Optional[str]
    due_type_name: Optional[str]
    unit_number: Optional[str]
    block_name: Optional[str]
    collected_by: Optional[str]
    is_overpayment: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "receipt_number": self.receipt_number,
            "amount": str(self.amount),
            "paid_at": self.paid_at.isoformat(),
            "payment_method": self.payment_method,
            "period_name": self.period_name,
            "due_type_name": self.due_type_name,
            "unit_number": self.unit_number,
            "block_name": self.block_name,
            "collected_by": self.collected_by,
            "is_overpayment": self.is_overpayment,
        }


class DuesReporting:
    """Listings and summaries over periods, unit dues and payments"""

    def __init__(
        self,
        directory: OrganizationDirectory,
        catalog: DueTypeCatalog,
        periods: PeriodLifecycleManager,
        unit_dues: UnitDueRepository,
        payments: PaymentLedger,
        currency: Currency,
        default_page_size: int = 20,
        max_page_size: int = 200
    ):
        self.directory = directory
        self.catalog = catalog
        self.periods = periods
        self.unit_dues = unit_dues
        self.payments = payments
        self.late_fees = LateFeeCalculator(currency)
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def list_unit_dues(
        self,
        caller: Caller,
        period_id: str,
        status: Optional[Any] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        today: Optional[date] = None
    ) -> Page[UnitDueView]:
        """
        Unit dues of a period ordered by block, unit number and due type

        Raises:
            ValidationError: Unknown status or page out of range
        """
        period = self.periods.get(period_id)
        require_permission(caller, Permission.VIEW_UNIT_DUES, period.organization_id)

        status = self._parse_status(status)
        page, page_size = self._paging(page, page_size)

        views = self._views(period, self.unit_dues.for_period(period_id, status), today)
        start = (page - 1) * page_size
        return Page(
            items=views[start:start + page_size],
            total_count=len(views),
            page=page,
            page_size=page_size,
        )

    def period_detail(
        self,
        caller: Caller,
        period_id: str,
        status: Optional[Any] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        today: Optional[date] = None
    ) -> PeriodDetail:
        unit_dues = self.list_unit_dues(caller, period_id, status, page, page_size, today)
        period = self.periods.get(period_id)
        collected = self.payments.collected_by_period(period.organization_id)
        return PeriodDetail(
            summary=self._summarize(period, self.unit_dues.for_period(period_id), collected),
            unit_dues=unit_dues,
        )

    def period_summaries(self, caller: Caller, organization_id: str) -> List[PeriodSummary]:
        """Every period of the organization with its collection totals, newest first"""
        require_permission(caller, Permission.VIEW_PERIODS, organization_id)

        collected = self.payments.collected_by_period(organization_id)
        dues_by_period: Dict[str, List[UnitDue]] = {}
        for unit_due in self.unit_dues.for_organization(organization_id):
            dues_by_period.setdefault(unit_due.period_id, []).append(unit_due)

        return [
            self._summarize(period, dues_by_period.get(period.id, []), collected)
            for period in self.periods.list(organization_id)
        ]

    def dues_summary(self, caller: Caller, organization_id: str,
                     today: Optional[date] = None) -> DuesSummary:
        require_permission(caller, Permission.VIEW_UNIT_DUES, organization_id)
        today = today or date.today()

        periods = {p.id: p for p in self.periods.list(organization_id)}
        pending_amount = ZERO
        pending_dues = 0
        overdue = 0
        for unit_due in self.unit_dues.for_organization(organization_id):
            if unit_due.status == UnitDueStatus.CANCELLED:
                continue
            pending_amount += unit_due.remaining_amount
            if unit_due.status in (UnitDueStatus.PENDING, UnitDueStatus.PARTIAL):
                pending_dues += 1
            period = periods.get(unit_due.period_id)
            if period and self.late_fees.is_overdue(unit_due.status.value, period.due_date, today):
                overdue += 1

        collected = self.payments.collected_by_period(organization_id)
        return DuesSummary(
            total_pending_amount=pending_amount,
            total_pending_dues=pending_dues,
            total_collected_amount=sum(collected.values(), ZERO),
            active_periods=sum(1 for p in periods.values() if p.status == PeriodStatus.ACTIVE),
            overdue_dues=overdue,
        )

    def my_dues(self, caller: Caller, organization_id: str,
                today: Optional[date] = None) -> List[MyDue]:
        """Open and settled dues of the caller's units, newest due date first"""
        require_permission(caller, Permission.VIEW_OWN_DUES, organization_id)
        if not caller.unit_ids:
            return []

        periods = {p.id: p for p in self.periods.list(organization_id)}
        result = []
        for period_id, group in self._group_by_period(
            self.unit_dues.for_units(organization_id, caller.unit_ids)
        ).items():
            period = periods.get(period_id)
            if period is None:
                continue
            for view in self._views(period, group, today):
                if view.status == UnitDueStatus.CANCELLED:
                    continue
                result.append(MyDue(view=view, period_name=period.name, due_date=period.due_date))

        result.sort(key=lambda d: (d.due_date, d.view.created_at), reverse=True)
        return result

    def my_payments(
        self,
        caller: Caller,
        organization_id: str,
        page: int = 1,
        page_size: Optional[int] = None
    ) -> Page[MyPayment]:
        """Receipts for the caller's units, newest first"""
        require_permission(caller, Permission.VIEW_OWN_DUES, organization_id)
        page, page_size = self._paging(page, page_size)

        payments = self.payments.payments_for_units(organization_id, caller.unit_ids)
        start = (page - 1) * page_size
        selected = payments[start:start + page_size]

        units = self.directory.units_by_id(organization_id)
        period_names = {p.id: p.name for p in self.periods.list(organization_id)}
        due_type_names = self._due_type_names(organization_id)
        items = []
        for payment in selected:
            unit_due = self.unit_dues.find(payment.unit_due_id)
            unit = units.get(payment.unit_id)
            items.append(MyPayment(
                id=payment.id,
                receipt_number=payment.receipt_number,
                amount=payment.amount,
                paid_at=payment.paid_at,
                payment_method=payment.payment_method.value,
                period_name=period_names.get(payment.period_id),
                due_type_name=due_type_names.get(unit_due.due_type_id) if unit_due else None,
                unit_number=unit.unit_number if unit else None,
                block_name=unit.block_name if unit else None,
                collected_by=payment.collected_by,
                is_overpayment=payment.is_overpayment,
            ))

        return Page(items=items, total_count=len(payments), page=page, page_size=page_size)

    def _views(self, period: DuesPeriod, unit_dues: List[UnitDue],
               today: Optional[date]) -> List[UnitDueView]:
        today = today or date.today()
        units = self.directory.units_by_id(period.organization_id)
        due_type_names = self._due_type_names(period.organization_id)
        settings = self.directory.late_fee_settings(period.organization_id)

        views = [
            self._view(unit_due, units.get(unit_due.unit_id),
                       due_type_names.get(unit_due.due_type_id), period, settings, today)
            for unit_due in unit_dues
        ]
        views.sort(key=lambda v: (
            v.block_name or "", v.unit_number or "", v.due_type_name or "", v.id
        ))
        return views

    def _view(self, unit_due: UnitDue, unit: Optional[Unit], due_type_name: Optional[str],
              period: DuesPeriod, settings, today: date) -> UnitDueView:
        status = unit_due.status.value
        remaining = unit_due.remaining_amount
        return UnitDueView(
            id=unit_due.id,
            period_id=unit_due.period_id,
            unit_id=unit_due.unit_id,
            unit_number=unit.unit_number if unit else None,
            block_name=unit.block_name if unit else None,
            resident_name=unit.resident_name if unit else None,
            due_type_id=unit_due.due_type_id,
            due_type_name=due_type_name,
            amount=unit_due.amount,
            paid_amount=unit_due.paid_amount,
            remaining_amount=remaining,
            status=unit_due.status,
            is_overdue=self.late_fees.is_overdue(status, period.due_date, today),
            overdue_days=self.late_fees.overdue_days(status, period.due_date, today),
            estimated_late_fee=self.late_fees.estimated_late_fee(
                remaining, status, period.due_date, settings, today
            ),
            created_at=unit_due.created_at,
        )

    def _summarize(self, period: DuesPeriod, unit_dues: List[UnitDue],
                   collected: Dict[str, Decimal]) -> PeriodSummary:
        live = [d for d in unit_dues if d.status != UnitDueStatus.CANCELLED]
        return PeriodSummary(
            period=period,
            total_dues=len(live),
            paid_count=sum(1 for d in live if d.status == UnitDueStatus.PAID),
            total_amount=sum((d.amount for d in live), ZERO),
            collected_amount=collected.get(period.id, ZERO),
        )

    def _due_type_names(self, organization_id: str) -> Dict[str, str]:
        return {d.id: d.name for d in self.catalog.list(organization_id)}

    def _group_by_period(self, unit_dues: List[UnitDue]) -> Dict[str, List[UnitDue]]:
        groups: Dict[str, List[UnitDue]] = {}
        for unit_due in unit_dues:
            groups.setdefault(unit_due.period_id, []).append(unit_due)
        return groups

    def _parse_status(self, status: Optional[Any]) -> Optional[UnitDueStatus]:
        if status is None or status == "":
            return None
        if isinstance(status, UnitDueStatus):
            return status
        try:
            return UnitDueStatus(str(status).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown unit due status '{status}'", {"status": str(status)})

    def _paging(self, page: int, page_size: Optional[int]):
        page_size = page_size or self.default_page_size
        if page < 1:
            raise ValidationError("Page must be at least 1", {"page": page})
        if page_size < 1:
            raise ValidationError("Page size must be at least 1", {"page_size": page_size})
        return page, min(page_size, self.max_page_size)
