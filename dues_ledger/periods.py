"""
Dues Period Module

Owns the billing-period state machine:

    draft ──► processing ──► active ──► closed
      ▲            │
      └── failed ◄─┘

``draft/failed → processing`` is a storage-level compare-and-swap and acts
as the accrual lock: only the request that wins it may write unit dues.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .errors import ConflictError, NotFoundError, ValidationError
from .permissions import Caller, Permission, require_permission
from .storage import StorageInterface, StorageRecord
from .unit_dues import UnitDueRepository


logger = logging.getLogger("dues_ledger.periods")


class PeriodStatus(Enum):
    """Billing period lifecycle states"""
    DRAFT = "draft"              # Editable, no unit dues yet
    PROCESSING = "processing"    # Accrual batch running
    ACTIVE = "active"            # Unit dues exist and accept payments
    FAILED = "failed"            # Last accrual rolled back, may be retried
    CLOSED = "closed"            # Frozen


ACCRUABLE_STATUSES = frozenset({PeriodStatus.DRAFT, PeriodStatus.FAILED})


@dataclass
class DuesPeriod(StorageRecord):
    """One billing cycle"""
    organization_id: str
    name: str
    start_date: date
    due_date: date
    created_by: str
    status: PeriodStatus = PeriodStatus.DRAFT
    closed_at: Optional[datetime] = None
    accrual_run_id: Optional[str] = None
    failure_reason: Optional[str] = None
    version: int = 1

    def __post_init__(self):
        if self.due_date < self.start_date:
            raise ValidationError(
                "Due date cannot precede start date",
                {"start_date": self.start_date.isoformat(), "due_date": self.due_date.isoformat()}
            )

    @property
    def is_editable(self) -> bool:
        return self.status in ACCRUABLE_STATUSES

    @property
    def is_closed(self) -> bool:
        return self.status == PeriodStatus.CLOSED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DuesPeriod':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            name=data['name'],
            start_date=date.fromisoformat(data['start_date']),
            due_date=date.fromisoformat(data['due_date']),
            created_by=data['created_by'],
            status=PeriodStatus(data['status']),
            closed_at=datetime.fromisoformat(data['closed_at']) if data.get('closed_at') else None,
            accrual_run_id=data.get('accrual_run_id'),
            failure_reason=data.get('failure_reason'),
            version=data.get('version', 1),
        )


def conflict_for_status(period: DuesPeriod) -> ConflictError:
    """The rejection a non-accruable period gives to an accrual request"""
    messages = {
        PeriodStatus.PROCESSING: "Accrual is already processing for this period",
        PeriodStatus.ACTIVE: "Accrual has already been completed for this period",
        PeriodStatus.CLOSED: "Period is closed",
    }
    return ConflictError(
        messages.get(period.status, f"Period is {period.status.value}"),
        {"period_id": period.id, "status": period.status.value}
    )


class PeriodLifecycleManager:
    """Creates billing periods and drives their state transitions"""

    def __init__(self, storage: StorageInterface, unit_dues: UnitDueRepository,
                 audit_trail: AuditTrail):
        self.storage = storage
        self.unit_dues = unit_dues
        self.audit_trail = audit_trail
        self.table = "dues_periods"

    def create(
        self,
        caller: Caller,
        organization_id: str,
        name: str,
        start_date: date,
        due_date: date
    ) -> DuesPeriod:
        """
        Create a period in draft

        Raises:
            ValidationError: Empty name or due date before start date
        """
        require_permission(caller, Permission.MANAGE_PERIODS, organization_id)
        if not name or not name.strip():
            raise ValidationError("Name is required")

        now = datetime.now(timezone.utc)
        period = DuesPeriod(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            name=name.strip(),
            start_date=start_date,
            due_date=due_date,
            created_by=caller.user_id,
        )
        self.storage.save(self.table, period.id, period.to_dict())

        self.audit_trail.log_event(
            AuditEventType.PERIOD_CREATED, "period", period.id,
            metadata={"name": period.name, "start_date": start_date.isoformat(),
                      "due_date": due_date.isoformat()},
            user_id=caller.user_id
        )
        logger.info("Period %s created for organization %s", period.id, organization_id)
        return period

    def update(
        self,
        caller: Caller,
        period_id: str,
        name: Optional[str] = None,
        start_date: Optional[date] = None,
        due_date: Optional[date] = None
    ) -> DuesPeriod:
        """Edit name or dates while the period is still draft or failed"""
        period = self.get(period_id)
        require_permission(caller, Permission.MANAGE_PERIODS, period.organization_id)

        if not period.is_editable:
            raise ConflictError(
                f"Period is {period.status.value} and can no longer be edited",
                {"period_id": period_id, "status": period.status.value}
            )
        if name is not None and not name.strip():
            raise ValidationError("Name is required")

        # __post_init__ re-checks the date order
        updated = replace(
            period,
            name=name.strip() if name is not None else period.name,
            start_date=start_date or period.start_date,
            due_date=due_date or period.due_date,
            version=period.version + 1,
            updated_at=datetime.now(timezone.utc),
        )
        self._swap(period, updated)

        self.audit_trail.log_event(
            AuditEventType.PERIOD_UPDATED, "period", period.id,
            metadata={"name": updated.name, "start_date": updated.start_date.isoformat(),
                      "due_date": updated.due_date.isoformat()},
            user_id=caller.user_id
        )
        return updated

    def delete(self, caller: Caller, period_id: str) -> None:
        """
        Delete a draft period that has no unit dues

        Raises:
            ConflictError: Period is past draft or unit dues exist
        """
        period = self.get(period_id)
        require_permission(caller, Permission.MANAGE_PERIODS, period.organization_id)

        if period.status != PeriodStatus.DRAFT:
            raise ConflictError(
                f"Only draft periods can be deleted (period is {period.status.value})",
                {"period_id": period_id, "status": period.status.value}
            )
        if self.unit_dues.count_for_period(period_id) > 0:
            raise ConflictError("Period has unit dues and cannot be deleted", {"period_id": period_id})

        deleted = self.storage.delete_if(
            self.table, period_id,
            {"status": PeriodStatus.DRAFT.value, "version": period.version}
        )
        if not deleted:
            raise ConflictError(
                "Period was modified concurrently; reload and retry", {"period_id": period_id}
            )
        self.audit_trail.log_event(
            AuditEventType.PERIOD_DELETED, "period", period_id,
            metadata={"name": period.name},
            user_id=caller.user_id
        )

    def close(self, caller: Caller, period_id: str) -> DuesPeriod:
        """
        Close an active period, freezing unit due creation and cancellation

        Raises:
            ConflictError: Period is not active
        """
        period = self.get(period_id)
        require_permission(caller, Permission.CLOSE_PERIOD, period.organization_id)

        if period.status != PeriodStatus.ACTIVE:
            raise ConflictError(
                f"Only active periods can be closed (period is {period.status.value})",
                {"period_id": period_id, "status": period.status.value}
            )

        now = datetime.now(timezone.utc)
        closed = self._transition(period, PeriodStatus.CLOSED, closed_at=now)

        self.audit_trail.log_event(
            AuditEventType.PERIOD_CLOSED, "period", period.id,
            user_id=caller.user_id
        )
        logger.info("Period %s closed", period.id)
        return closed

    def assert_open(self, period: DuesPeriod) -> None:
        """Closed periods accept no new or cancelled dues and no payments"""
        if period.is_closed:
            raise ConflictError("Period is closed", {"period_id": period.id})

    def begin_processing(self, period_id: str, run_id: str) -> DuesPeriod:
        """
        Acquire the accrual lock: draft/failed → processing.

        The new status is persisted before this returns so pollers see
        ``processing`` while the batch runs.

        Raises:
            ConflictError: Period is not accruable or another request won the race
        """
        period = self.get(period_id)
        if period.status not in ACCRUABLE_STATUSES:
            raise conflict_for_status(period)

        try:
            return self._transition(
                period, PeriodStatus.PROCESSING,
                accrual_run_id=run_id, failure_reason=None
            )
        except ConflictError:
            # Lost the compare-and-swap; report the state the winner left
            raise conflict_for_status(self.get(period_id))

    def mark_active(self, period_id: str, run_id: str) -> DuesPeriod:
        period = self._require_run(period_id, run_id)
        return self._transition(period, PeriodStatus.ACTIVE)

    def mark_failed(self, period_id: str, run_id: str, reason: str) -> DuesPeriod:
        period = self._require_run(period_id, run_id)
        return self._transition(period, PeriodStatus.FAILED, failure_reason=reason)

    def find(self, period_id: str) -> Optional[DuesPeriod]:
        data = self.storage.load(self.table, period_id)
        return DuesPeriod.from_dict(data) if data else None

    def get(self, period_id: str) -> DuesPeriod:
        period = self.find(period_id)
        if not period:
            raise NotFoundError(f"Period {period_id} not found")
        return period

    def list(self, organization_id: str) -> List[DuesPeriod]:
        """Periods of an organization, newest start date first"""
        periods = [
            DuesPeriod.from_dict(d)
            for d in self.storage.find(self.table, {"organization_id": organization_id})
        ]
        periods.sort(key=lambda p: (p.start_date, p.created_at), reverse=True)
        return periods

    def _require_run(self, period_id: str, run_id: str) -> DuesPeriod:
        period = self.get(period_id)
        if period.status != PeriodStatus.PROCESSING or period.accrual_run_id != run_id:
            raise ConflictError(
                "Period is not being processed by this accrual run",
                {"period_id": period_id, "status": period.status.value}
            )
        return period

    def _transition(self, period: DuesPeriod, status: PeriodStatus, **changes: Any) -> DuesPeriod:
        updated = replace(
            period,
            status=status,
            version=period.version + 1,
            updated_at=datetime.now(timezone.utc),
            **changes
        )
        self._swap(period, updated)
        logger.info(
            "Period %s: %s -> %s", period.id, period.status.value, status.value
        )
        return updated

    def _swap(self, current: DuesPeriod, updated: DuesPeriod) -> None:
        """Compare-and-swap on status and version"""
        saved = self.storage.update_if(
            self.table, current.id,
            {"status": current.status.value, "version": current.version},
            updated.to_dict()
        )
        if not saved:
            raise ConflictError(
                "Period was modified concurrently; reload and retry",
                {"period_id": current.id}
            )
