"""
Payment Ledger Module

Records payments against unit dues and cancels dues. Both operations can
ask the caller for explicit confirmation (overpayment, cancelling a due that
holds money) by returning NeedsConfirmation instead of changing anything.

Invariant: a due's ``paid_amount`` equals the sum of its non-voided payments.
A payment row is written before the due's compare-and-swap and removed again
if the swap loses or fails, so the loser of a race leaves nothing behind.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Currency, ZERO, parse_amount, quantize
from .errors import ConflictError, PermissionDeniedError, TransientFailure, ValidationError
from .logging_config import log_action
from .outcomes import NeedsConfirmation, Outcome, Success
from .periods import PeriodLifecycleManager, PeriodStatus
from .permissions import Caller, Permission, require_permission
from .storage import StorageInterface, StorageRecord
from .unit_dues import UnitDue, UnitDueRepository, UnitDueStatus, status_for


logger = logging.getLogger("dues_ledger.payments")


class PaymentMethod(Enum):
    """How the money was collected"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


@dataclass
class Payment(StorageRecord):
    """Money collected against one unit due"""
    organization_id: str
    unit_due_id: str
    period_id: str
    unit_id: str
    receipt_number: str
    receipt_sequence: int
    amount: Decimal
    paid_at: datetime
    payment_method: PaymentMethod
    collected_by: Optional[str] = None
    note: Optional[str] = None
    is_overpayment: bool = False
    overpayment_amount: Optional[Decimal] = None
    is_voided: bool = False
    voided_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            unit_due_id=data['unit_due_id'],
            period_id=data['period_id'],
            unit_id=data['unit_id'],
            receipt_number=data['receipt_number'],
            receipt_sequence=data['receipt_sequence'],
            amount=Decimal(data['amount']),
            paid_at=datetime.fromisoformat(data['paid_at']),
            payment_method=PaymentMethod(data['payment_method']),
            collected_by=data.get('collected_by'),
            note=data.get('note'),
            is_overpayment=data.get('is_overpayment', False),
            overpayment_amount=Decimal(data['overpayment_amount']) if data.get('overpayment_amount') else None,
            is_voided=data.get('is_voided', False),
            voided_at=datetime.fromisoformat(data['voided_at']) if data.get('voided_at') else None,
        )


class PaymentLedger:
    """Payments and cancellations for unit dues"""

    def __init__(
        self,
        storage: StorageInterface,
        unit_dues: UnitDueRepository,
        periods: PeriodLifecycleManager,
        audit_trail: AuditTrail,
        currency: Currency,
        receipt_prefix: str = "RCP"
    ):
        self.storage = storage
        self.unit_dues = unit_dues
        self.periods = periods
        self.audit_trail = audit_trail
        self.currency = currency
        self.receipt_prefix = receipt_prefix
        self.table = "payments"

    def record_payment(
        self,
        caller: Caller,
        unit_due_id: str,
        amount: Any,
        paid_at: Optional[datetime] = None,
        method: Any = PaymentMethod.CASH,
        note: Optional[str] = None,
        confirmed: bool = False
    ) -> Outcome[Payment]:
        """
        Record a payment against a unit due.

        Args:
            caller: Admin or board member collecting the money
            unit_due_id: Due being paid
            amount: Positive amount (string, int or Decimal)
            paid_at: When the money was received; defaults to now
            method: PaymentMethod or its value
            note: Free text shown on the receipt
            confirmed: Accept an amount above what is still owed

        Returns:
            Success(Payment), or NeedsConfirmation("overpayment") with
            nothing changed

        Raises:
            ValidationError: Amount is not positive or the method is unknown
            ConflictError: Due is cancelled, its period is not active, or a
                concurrent update won the race
            TransientFailure: Storage failed while updating the due; the
                payment row has been removed
        """
        unit_due = self.unit_dues.get(unit_due_id)
        require_permission(caller, Permission.RECORD_PAYMENT, unit_due.organization_id)

        amount = self._validate_amount(amount)
        method = self._validate_method(method)

        if unit_due.status == UnitDueStatus.CANCELLED:
            raise ConflictError("Unit due is cancelled", {"unit_due_id": unit_due.id})

        period = self.periods.get(unit_due.period_id)
        self.periods.assert_open(period)
        if period.status != PeriodStatus.ACTIVE:
            raise ConflictError(
                f"Period is {period.status.value} and does not accept payments",
                {"period_id": period.id, "status": period.status.value}
            )

        remaining = unit_due.remaining_amount
        overpayment = amount - remaining if amount > remaining else ZERO
        if overpayment > ZERO and not confirmed:
            return NeedsConfirmation(
                reason="overpayment",
                message=f"Payment exceeds the remaining amount by {overpayment}",
                details={
                    "amount": str(amount),
                    "remaining_amount": str(remaining),
                    "overpayment_amount": str(overpayment),
                }
            )

        now = datetime.now(timezone.utc)
        sequence = self.storage.next_sequence(f"receipts:{unit_due.organization_id}")
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=unit_due.organization_id,
            unit_due_id=unit_due.id,
            period_id=unit_due.period_id,
            unit_id=unit_due.unit_id,
            receipt_number=f"{self.receipt_prefix}-{sequence:06d}",
            receipt_sequence=sequence,
            amount=amount,
            paid_at=paid_at or now,
            payment_method=method,
            collected_by=caller.user_id,
            note=note.strip() if note and note.strip() else None,
            is_overpayment=overpayment > ZERO,
            overpayment_amount=overpayment if overpayment > ZERO else None,
        )
        self.storage.save(self.table, payment.id, payment.to_dict())

        paid_amount = unit_due.paid_amount + amount
        try:
            updated = self.unit_dues.compare_and_save(
                unit_due,
                paid_amount=paid_amount,
                status=status_for(unit_due.amount, paid_amount),
            )
        except Exception as e:
            self.storage.delete(self.table, payment.id)
            logger.exception("Payment %s rolled back", payment.receipt_number)
            raise TransientFailure(
                "Payment could not be recorded and was rolled back; retry",
                {"unit_due_id": unit_due.id, "reason": str(e)}
            ) from e
        if updated is None:
            # Lost the race; the receipt number is burnt
            self.storage.delete(self.table, payment.id)
            raise ConflictError(
                "Unit due was modified concurrently; reload and retry",
                {"unit_due_id": unit_due.id}
            )

        self.audit_trail.log_event(
            AuditEventType.PAYMENT_RECORDED, "unit_due", unit_due.id,
            metadata={
                "payment_id": payment.id,
                "receipt_number": payment.receipt_number,
                "amount": amount,
                "paid_amount": updated.paid_amount,
                "status": updated.status.value,
                "is_overpayment": payment.is_overpayment,
            },
            user_id=caller.user_id
        )
        log_action(
            logger, "info", f"Payment {payment.receipt_number} recorded",
            user_id=caller.user_id, action="record_payment",
            resource=f"unit_due:{unit_due.id}",
            extra={"amount": str(amount), "status": updated.status.value,
                   "is_overpayment": payment.is_overpayment}
        )
        return Success(payment)

    def cancel_unit_due(self, caller: Caller, unit_due_id: str,
                        confirm: bool = False) -> Outcome[UnitDue]:
        """
        Cancel a unit due, voiding its payments.

        Returns:
            Success(UnitDue) (also when it was already cancelled), or
            NeedsConfirmation("has_payments") when money has been recorded
            and ``confirm`` is not set

        Raises:
            ConflictError: Period is closed or not active, or a concurrent
                payment won the race
        """
        unit_due = self.unit_dues.get(unit_due_id)
        require_permission(caller, Permission.CANCEL_UNIT_DUE, unit_due.organization_id)

        period = self.periods.get(unit_due.period_id)
        self.periods.assert_open(period)

        if unit_due.status == UnitDueStatus.CANCELLED:
            return Success(unit_due)

        if period.status != PeriodStatus.ACTIVE:
            raise ConflictError(
                f"Period is {period.status.value}; unit dues cannot be cancelled",
                {"period_id": period.id, "status": period.status.value}
            )

        payments = self._active_payments(unit_due.id)
        if (unit_due.status == UnitDueStatus.PAID or payments) and not confirm:
            return NeedsConfirmation(
                reason="has_payments",
                message="Unit due has recorded payments; confirm to cancel and void them",
                details={
                    "paid_amount": str(unit_due.paid_amount),
                    "payment_count": len(payments),
                    "status": unit_due.status.value,
                }
            )

        now = datetime.now(timezone.utc)
        updated = self.unit_dues.compare_and_save(
            unit_due,
            status=UnitDueStatus.CANCELLED,
            paid_amount=ZERO,
            cancelled_at=now,
            cancelled_by=caller.user_id,
        )
        if updated is None:
            current = self.unit_dues.get(unit_due_id)
            if current.status == UnitDueStatus.CANCELLED:
                return Success(current)
            raise ConflictError(
                "Unit due was modified concurrently; reload and retry",
                {"unit_due_id": unit_due_id}
            )

        # Read again so payments saved while we swapped are voided too
        voided = 0
        for payment in self._active_payments(unit_due.id):
            payment.is_voided = True
            payment.voided_at = now
            payment.updated_at = now
            self.storage.save(self.table, payment.id, payment.to_dict())
            voided += 1

        self.audit_trail.log_event(
            AuditEventType.UNIT_DUE_CANCELLED, "unit_due", unit_due.id,
            metadata={"previous_status": unit_due.status.value,
                      "previous_paid_amount": unit_due.paid_amount,
                      "voided_payments": voided},
            user_id=caller.user_id
        )
        log_action(
            logger, "info", f"Unit due {unit_due.id} cancelled",
            user_id=caller.user_id, action="cancel_unit_due",
            resource=f"unit_due:{unit_due.id}", extra={"voided_payments": voided}
        )
        return Success(updated)

    def get_unit_due(self, caller: Caller, unit_due_id: str) -> UnitDue:
        unit_due = self.unit_dues.get(unit_due_id)
        self._require_view(caller, unit_due)
        return unit_due

    def list_payments(self, caller: Caller, unit_due_id: str,
                      include_voided: bool = True) -> List[Payment]:
        """Payments of one due in receipt order"""
        unit_due = self.unit_dues.get(unit_due_id)
        self._require_view(caller, unit_due)
        payments = self._payments_for(unit_due_id)
        if not include_voided:
            payments = [p for p in payments if not p.is_voided]
        return payments

    def payments_for_units(self, organization_id: str, unit_ids) -> List[Payment]:
        """Non-voided payments of the given units, newest receipt first"""
        wanted = set(unit_ids)
        payments = [
            Payment.from_dict(d)
            for d in self.storage.find(self.table, {"organization_id": organization_id})
        ]
        payments = [p for p in payments if p.unit_id in wanted and not p.is_voided]
        payments.sort(key=lambda p: p.receipt_sequence, reverse=True)
        return payments

    def collected_by_period(self, organization_id: str) -> Dict[str, Decimal]:
        """Sum of non-voided payments per period"""
        totals: Dict[str, Decimal] = {}
        for data in self.storage.find(self.table, {"organization_id": organization_id}):
            payment = Payment.from_dict(data)
            if not payment.is_voided:
                totals[payment.period_id] = totals.get(payment.period_id, ZERO) + payment.amount
        return totals

    def _payments_for(self, unit_due_id: str) -> List[Payment]:
        payments = [
            Payment.from_dict(d)
            for d in self.storage.find(self.table, {"unit_due_id": unit_due_id})
        ]
        payments.sort(key=lambda p: p.receipt_sequence)
        return payments

    def _active_payments(self, unit_due_id: str) -> List[Payment]:
        return [p for p in self._payments_for(unit_due_id) if not p.is_voided]

    def _require_view(self, caller: Caller, unit_due: UnitDue) -> None:
        if caller.has_permission(Permission.VIEW_UNIT_DUES):
            require_permission(caller, Permission.VIEW_UNIT_DUES, unit_due.organization_id)
            return
        require_permission(caller, Permission.VIEW_OWN_DUES, unit_due.organization_id)
        if unit_due.unit_id not in caller.unit_ids:
            raise PermissionDeniedError(
                "Residents can only view dues of their own units",
                {"unit_due_id": unit_due.id}
            )

    def _validate_amount(self, value: Any) -> Decimal:
        try:
            amount = parse_amount(value)
        except ValueError as e:
            raise ValidationError(f"Amount is invalid: {e}")
        amount = quantize(amount, self.currency)
        if amount <= ZERO:
            raise ValidationError("Amount must be greater than zero", {"amount": str(amount)})
        return amount

    def _validate_method(self, method: Any) -> PaymentMethod:
        if isinstance(method, PaymentMethod):
            return method
        try:
            return PaymentMethod(str(method).strip().lower())
        except ValueError:
            allowed = ", ".join(m.value for m in PaymentMethod)
            raise ValidationError(
                f"Unknown payment method '{method}' (allowed: {allowed})",
                {"payment_method": str(method)}
            )
