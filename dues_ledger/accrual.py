"""
Accrual Engine Module

Two-phase materialization of unit dues for a billing period:

1. Preview prices every (included unit, selected due type) pair and reports
   the totals without writing anything.
2. Confirm takes the period's accrual lock, inserts one UnitDue per pair in
   chunks and activates the period. Any failure removes the rows written by
   that run and leaves the period ``failed`` so it can be retried.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Currency, ZERO, quantize
from .directory import OrganizationDirectory, Unit, UnitCategory
from .due_types import DueType, DueTypeCatalog
from .errors import ConflictError, DuesLedgerError, DuplicateKeyError, TransientFailure, ValidationError
from .logging_config import log_action
from .periods import ACCRUABLE_STATUSES, DuesPeriod, PeriodLifecycleManager, conflict_for_status
from .permissions import Caller, Permission, require_permission
from .unit_dues import UnitDue, UnitDueRepository


logger = logging.getLogger("dues_ledger.accrual")

# Categories in display order; units without a category are listed last
_CATEGORY_ORDER = {category: index for index, category in enumerate(UnitCategory)}


def _category_sort_key(category: Optional[UnitCategory]) -> int:
    return _CATEGORY_ORDER.get(category, len(_CATEGORY_ORDER))


@dataclass
class CategoryLine:
    """Units of one category priced under one due type"""
    category: Optional[UnitCategory]
    unit_count: int
    unit_amount: Decimal
    subtotal: Decimal
    is_override: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value if self.category else None,
            "unit_count": self.unit_count,
            "unit_amount": str(self.unit_amount),
            "subtotal": str(self.subtotal),
            "is_override": self.is_override,
        }


@dataclass
class DueTypeBreakdown:
    due_type_id: str
    due_type_name: str
    unit_count: int
    subtotal: Decimal
    lines: List[CategoryLine] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "due_type_id": self.due_type_id,
            "due_type_name": self.due_type_name,
            "unit_count": self.unit_count,
            "subtotal": str(self.subtotal),
            "lines": [line.to_dict() for line in self.lines],
        }


@dataclass
class AccrualPreview:
    """Priced result of an accrual request; nothing is written to produce it"""
    period_id: str
    include_empty_units: bool
    total_units: int
    included_units: int
    excluded_empty_units: int
    units_without_category: int
    breakdowns: List[DueTypeBreakdown]
    total_amount: Decimal

    @property
    def row_count(self) -> int:
        return self.included_units * len(self.breakdowns)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_id": self.period_id,
            "include_empty_units": self.include_empty_units,
            "total_units": self.total_units,
            "included_units": self.included_units,
            "excluded_empty_units": self.excluded_empty_units,
            "units_without_category": self.units_without_category,
            "due_type_breakdowns": [b.to_dict() for b in self.breakdowns],
            "total_amount": str(self.total_amount),
            "row_count": self.row_count,
        }


@dataclass
class AccrualResult:
    """Outcome of a confirmed accrual"""
    period: DuesPeriod
    run_id: str
    created_count: int
    total_amount: Decimal
    preview: AccrualPreview

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_id": self.period.id,
            "status": self.period.status.value,
            "run_id": self.run_id,
            "created_count": self.created_count,
            "total_amount": str(self.total_amount),
            "preview": self.preview.to_dict(),
        }


class AccrualEngine:
    """Generates unit dues for a period from selected due types"""

    def __init__(
        self,
        directory: OrganizationDirectory,
        catalog: DueTypeCatalog,
        periods: PeriodLifecycleManager,
        unit_dues: UnitDueRepository,
        audit_trail: AuditTrail,
        currency: Currency,
        batch_size: int = 500
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.directory = directory
        self.catalog = catalog
        self.periods = periods
        self.unit_dues = unit_dues
        self.audit_trail = audit_trail
        self.currency = currency
        self.batch_size = batch_size

    def accrue(
        self,
        caller: Caller,
        period_id: str,
        due_type_ids: Sequence[str],
        include_empty_units: bool = False,
        confirmed: bool = False
    ) -> Union[AccrualPreview, AccrualResult]:
        """Preview when not confirmed, otherwise materialize the unit dues"""
        if confirmed:
            return self.confirm(caller, period_id, due_type_ids, include_empty_units)
        return self.preview(caller, period_id, due_type_ids, include_empty_units)

    def preview(
        self,
        caller: Caller,
        period_id: str,
        due_type_ids: Sequence[str],
        include_empty_units: bool = False
    ) -> AccrualPreview:
        """
        Price an accrual without writing anything.

        Raises:
            ValidationError: No due type selected, or one is unknown, foreign or inactive
            ConflictError: Period is not draft or failed
        """
        period = self.periods.get(period_id)
        require_permission(caller, Permission.RUN_ACCRUAL, period.organization_id)
        if period.status not in ACCRUABLE_STATUSES:
            raise conflict_for_status(period)

        due_types = self._resolve_due_types(period, due_type_ids)
        units = self.directory.list_units(period.organization_id)
        preview, _ = self._price(period, units, due_types, include_empty_units)
        return preview

    def confirm(
        self,
        caller: Caller,
        period_id: str,
        due_type_ids: Sequence[str],
        include_empty_units: bool = False
    ) -> AccrualResult:
        """
        Materialize one UnitDue per (included unit, selected due type).

        Raises:
            ValidationError: Invalid selection (period state unchanged)
            ConflictError: Period is not accruable or another confirm holds it
            TransientFailure: Storage failed mid-batch; rows were removed and
                the period is now ``failed``
        """
        period = self.periods.get(period_id)
        require_permission(caller, Permission.RUN_ACCRUAL, period.organization_id)
        if period.status not in ACCRUABLE_STATUSES:
            raise conflict_for_status(period)
        self._resolve_due_types(period, due_type_ids)

        run_id = str(uuid.uuid4())
        period = self.periods.begin_processing(period_id, run_id)

        self.audit_trail.log_event(
            AuditEventType.ACCRUAL_STARTED, "period", period.id,
            metadata={"run_id": run_id, "due_type_ids": list(dict.fromkeys(due_type_ids)),
                      "include_empty_units": include_empty_units},
            user_id=caller.user_id
        )
        log_action(
            logger, "info", f"Accrual started for period {period.id}",
            user_id=caller.user_id, action="accrual_started",
            resource=f"period:{period.id}", correlation_id=run_id
        )

        try:
            # Leftovers of a run whose cleanup failed; nobody else can write
            # this period while we hold it
            stale = self.unit_dues.delete_for_period(period.id)
            if stale:
                logger.warning("Removed %d stale unit dues from period %s", stale, period.id)

            # Read master data again under the lock
            due_types = self._resolve_due_types(period, due_type_ids)
            units = self.directory.list_units(period.organization_id)
            preview, pairs = self._price(period, units, due_types, include_empty_units)

            rows = self._build_rows(period, run_id, pairs)
            for start in range(0, len(rows), self.batch_size):
                self.unit_dues.insert_batch(rows[start:start + self.batch_size])

            period = self.periods.mark_active(period.id, run_id)
        except DuesLedgerError as e:
            self._roll_back(period, run_id, caller, e)
            raise
        except DuplicateKeyError as e:
            self._roll_back(period, run_id, caller, e)
            raise ConflictError(
                "Unit dues already exist for this period", {"period_id": period.id}
            ) from e
        except Exception as e:
            self._roll_back(period, run_id, caller, e)
            raise TransientFailure(
                "Accrual failed and was rolled back; the period can be retried",
                {"period_id": period.id, "reason": str(e)}
            ) from e

        self.audit_trail.log_event(
            AuditEventType.ACCRUAL_COMPLETED, "period", period.id,
            metadata={"run_id": run_id, "created_count": len(rows),
                      "total_amount": preview.total_amount},
            user_id=caller.user_id
        )
        log_action(
            logger, "info", f"Accrual completed for period {period.id}",
            user_id=caller.user_id, action="accrual_completed",
            resource=f"period:{period.id}", correlation_id=run_id,
            extra={"created_count": len(rows), "total_amount": str(preview.total_amount)}
        )

        return AccrualResult(
            period=period,
            run_id=run_id,
            created_count=len(rows),
            total_amount=preview.total_amount,
            preview=preview,
        )

    def _resolve_due_types(self, period: DuesPeriod, due_type_ids: Sequence[str]) -> List[DueType]:
        """Load the selection in request order, dropping repeated ids"""
        selected = list(dict.fromkeys(due_type_ids or []))
        if not selected:
            raise ValidationError("Select at least one type")

        due_types = []
        for due_type_id in selected:
            due_type = self.catalog.find(due_type_id)
            if due_type is None or due_type.organization_id != period.organization_id:
                raise ValidationError(
                    f"Due type {due_type_id} does not exist in this organization",
                    {"due_type_id": due_type_id}
                )
            if not due_type.is_active:
                raise ValidationError(
                    f"Due type '{due_type.name}' is inactive",
                    {"due_type_id": due_type_id}
                )
            due_types.append(due_type)
        return due_types

    def _price(
        self,
        period: DuesPeriod,
        units: List[Unit],
        due_types: List[DueType],
        include_empty_units: bool
    ) -> Tuple[AccrualPreview, List[Tuple[Unit, DueType, Decimal]]]:
        included = [u for u in units if include_empty_units or not u.is_empty]

        pairs: List[Tuple[Unit, DueType, Decimal]] = []
        breakdowns = []
        total = ZERO
        for due_type in due_types:
            by_category: Dict[Optional[UnitCategory], List[Unit]] = {}
            for unit in included:
                by_category.setdefault(unit.category, []).append(unit)

            lines = []
            for category in sorted(by_category, key=_category_sort_key):
                members = by_category[category]
                amount = due_type.amount_for(category)
                subtotal = quantize(amount * len(members), self.currency)
                lines.append(CategoryLine(
                    category=category,
                    unit_count=len(members),
                    unit_amount=amount,
                    subtotal=subtotal,
                    is_override=category is not None and category in due_type.category_amounts,
                ))
            for unit in included:
                pairs.append((unit, due_type, due_type.amount_for(unit.category)))

            subtotal = sum((line.subtotal for line in lines), ZERO)
            breakdowns.append(DueTypeBreakdown(
                due_type_id=due_type.id,
                due_type_name=due_type.name,
                unit_count=len(included),
                subtotal=quantize(subtotal, self.currency),
                lines=lines,
            ))
            total += subtotal

        preview = AccrualPreview(
            period_id=period.id,
            include_empty_units=include_empty_units,
            total_units=len(units),
            included_units=len(included),
            excluded_empty_units=len(units) - len(included),
            units_without_category=sum(1 for u in included if u.category is None),
            breakdowns=breakdowns,
            total_amount=quantize(total, self.currency),
        )
        return preview, pairs

    def _build_rows(
        self,
        period: DuesPeriod,
        run_id: str,
        pairs: Iterable[Tuple[Unit, DueType, Decimal]]
    ) -> List[UnitDue]:
        now = datetime.now(timezone.utc)
        return [
            UnitDue(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                organization_id=period.organization_id,
                period_id=period.id,
                unit_id=unit.id,
                due_type_id=due_type.id,
                amount=amount,
                accrual_run_id=run_id,
            )
            for unit, due_type, amount in pairs
        ]

    def _roll_back(self, period: DuesPeriod, run_id: str, caller: Caller, error: Exception) -> None:
        """Remove this run's rows and move the period to failed"""
        logger.error("Accrual %s for period %s failed: %s", run_id, period.id, error)

        removed = 0
        try:
            removed = self.unit_dues.delete_for_run(run_id)
        except Exception:
            # The next confirm purges the period before writing
            logger.exception("Could not remove unit dues of failed accrual %s", run_id)

        try:
            self.periods.mark_failed(period.id, run_id, str(error) or type(error).__name__)
        except Exception:
            logger.exception("Could not mark period %s as failed", period.id)

        self.audit_trail.log_event(
            AuditEventType.ACCRUAL_FAILED, "period", period.id,
            metadata={"run_id": run_id, "reason": str(error), "removed_rows": removed},
            user_id=caller.user_id
        )
