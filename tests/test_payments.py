"""
Tests for the payment ledger: payments, overpayment confirmation,
cancellation and optimistic concurrency
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from dues_ledger.accrual import AccrualEngine
from dues_ledger.audit import AuditTrail, AuditEventType
from dues_ledger.currency import Currency
from dues_ledger.directory import OrganizationDirectory
from dues_ledger.due_types import DueTypeCatalog
from dues_ledger.errors import ConflictError, PermissionDeniedError, TransientFailure, ValidationError
from dues_ledger.outcomes import NeedsConfirmation, Success
from dues_ledger.payments import PaymentLedger, PaymentMethod
from dues_ledger.periods import PeriodLifecycleManager
from dues_ledger.permissions import Caller, MemberRole
from dues_ledger.storage import InMemoryStorage
from dues_ledger.unit_dues import UnitDueRepository, UnitDueStatus


ORG = "org-1"
PAID_AT = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


class TestPaymentLedger:
    """Payments and cancellations against accrued unit dues"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.directory = OrganizationDirectory(self.storage)
        self.unit_dues = UnitDueRepository(self.storage)
        self.catalog = DueTypeCatalog(self.storage, self.unit_dues, self.audit_trail, Currency.TRY)
        self.periods = PeriodLifecycleManager(self.storage, self.unit_dues, self.audit_trail)
        self.engine = AccrualEngine(
            self.directory, self.catalog, self.periods, self.unit_dues,
            self.audit_trail, Currency.TRY
        )
        self.ledger = PaymentLedger(
            self.storage, self.unit_dues, self.periods, self.audit_trail, Currency.TRY
        )

        self.admin = Caller(user_id="admin-1", role=MemberRole.ADMIN, organization_id=ORG)
        self.board = Caller(user_id="board-1", role=MemberRole.BOARD_MEMBER, organization_id=ORG)

        self.directory.register_organization("Sunset Residences", organization_id=ORG)
        self.unit = self.directory.register_unit(ORG, "1", block_name="A", resident_name="Ayşe")
        due_type = self.catalog.create(self.admin, ORG, "Maintenance", "1000")
        self.period = self.periods.create(
            self.admin, ORG, "January 2024", date(2024, 1, 1), date(2024, 1, 31)
        )
        self.engine.confirm(self.admin, self.period.id, [due_type.id])
        self.due = self.unit_dues.for_period(self.period.id)[0]

    def pay(self, amount, caller=None, **kwargs):
        kwargs.setdefault("paid_at", PAID_AT)
        return self.ledger.record_payment(caller or self.admin, self.due.id, amount, **kwargs)

    def paid_sum(self):
        return sum(
            (p.amount for p in self.ledger.list_payments(self.admin, self.due.id) if not p.is_voided),
            Decimal("0")
        )

    def test_full_payment_then_cancel_scenario(self):
        outcome = self.pay("1000")
        assert isinstance(outcome, Success)

        due = self.unit_dues.get(self.due.id)
        assert due.status == UnitDueStatus.PAID
        assert due.remaining_amount == Decimal("0")

        outcome = self.ledger.cancel_unit_due(self.admin, self.due.id)
        assert isinstance(outcome, NeedsConfirmation)
        assert outcome.reason == "has_payments"
        assert self.unit_dues.get(self.due.id).status == UnitDueStatus.PAID

        outcome = self.ledger.cancel_unit_due(self.admin, self.due.id, confirm=True)
        assert isinstance(outcome, Success)
        assert outcome.value.status == UnitDueStatus.CANCELLED
        assert outcome.value.paid_amount == Decimal("0")
        assert outcome.value.cancelled_by == "admin-1"

        payments = self.ledger.list_payments(self.admin, self.due.id)
        assert len(payments) == 1
        assert payments[0].is_voided
        assert self.paid_sum() == self.unit_dues.get(self.due.id).paid_amount

    def test_partial_payments(self):
        payment = self.pay("400", method="bank_transfer", note="  first installment ").value

        assert payment.amount == Decimal("400.00")
        assert payment.payment_method == PaymentMethod.BANK_TRANSFER
        assert payment.note == "first installment"
        assert payment.collected_by == "admin-1"
        assert payment.paid_at == PAID_AT
        assert not payment.is_overpayment

        due = self.unit_dues.get(self.due.id)
        assert due.status == UnitDueStatus.PARTIAL
        assert due.paid_amount == Decimal("400.00")
        assert due.remaining_amount == Decimal("600.00")

        self.pay("600", caller=self.board)
        due = self.unit_dues.get(self.due.id)
        assert due.status == UnitDueStatus.PAID
        assert self.paid_sum() == due.paid_amount == Decimal("1000.00")

    def test_receipt_numbers_increase(self):
        receipts = [self.pay("100").value.receipt_number for _ in range(3)]
        assert receipts == ["RCP-000001", "RCP-000002", "RCP-000003"]

    def test_unconfirmed_overpayment_changes_nothing(self):
        self.pay("900")

        outcome = self.pay("300")
        assert isinstance(outcome, NeedsConfirmation)
        assert outcome.reason == "overpayment"
        assert outcome.details["overpayment_amount"] == "200.00"
        assert outcome.details["remaining_amount"] == "100.00"

        due = self.unit_dues.get(self.due.id)
        assert due.paid_amount == Decimal("900.00")
        assert due.status == UnitDueStatus.PARTIAL
        assert len(self.ledger.list_payments(self.admin, self.due.id)) == 1
        # No receipt number was consumed
        assert self.pay("50").value.receipt_number == "RCP-000002"

    def test_confirmed_overpayment(self):
        self.pay("900")

        outcome = self.pay("300", confirmed=True)
        assert isinstance(outcome, Success)
        payment = outcome.value
        assert payment.is_overpayment
        assert payment.overpayment_amount == Decimal("200.00")

        due = self.unit_dues.get(self.due.id)
        assert due.status == UnitDueStatus.PAID
        assert due.paid_amount == Decimal("1200.00")
        assert due.remaining_amount == Decimal("0")
        assert due.overpaid_amount == Decimal("200.00")
        flagged = [p for p in self.ledger.list_payments(self.admin, self.due.id) if p.is_overpayment]
        assert len(flagged) == 1

    def test_payment_on_paid_due_needs_confirmation(self):
        self.pay("1000")
        outcome = self.pay("10")
        assert isinstance(outcome, NeedsConfirmation)
        assert Decimal(outcome.details["remaining_amount"]) == 0

    def test_invalid_amounts(self):
        for amount in ("0", "-5", "0.001", "abc", 12.5):
            with pytest.raises(ValidationError):
                self.pay(amount)
        assert self.ledger.list_payments(self.admin, self.due.id) == []

    def test_unknown_method(self):
        with pytest.raises(ValidationError):
            self.pay("100", method="cheque")

    def test_resident_cannot_record_payment(self):
        resident = Caller(user_id="res-1", role=MemberRole.RESIDENT, organization_id=ORG,
                          unit_ids=frozenset({self.unit.id}))
        with pytest.raises(PermissionDeniedError):
            self.pay("100", caller=resident)

    def test_board_member_cannot_cancel(self):
        with pytest.raises(PermissionDeniedError):
            self.ledger.cancel_unit_due(self.board, self.due.id)

    def test_cancel_without_payments_needs_no_confirmation(self):
        outcome = self.ledger.cancel_unit_due(self.admin, self.due.id)

        assert isinstance(outcome, Success)
        assert outcome.value.status == UnitDueStatus.CANCELLED
        assert outcome.value.remaining_amount == Decimal("0")

    def test_cancel_is_idempotent(self):
        self.pay("250")
        self.ledger.cancel_unit_due(self.admin, self.due.id, confirm=True)

        again = self.ledger.cancel_unit_due(self.admin, self.due.id)
        assert isinstance(again, Success)
        assert again.value.status == UnitDueStatus.CANCELLED
        assert len(self.audit_trail.get_events_by_type(AuditEventType.UNIT_DUE_CANCELLED)) == 1

    def test_payment_on_cancelled_due_conflicts(self):
        self.ledger.cancel_unit_due(self.admin, self.due.id)
        with pytest.raises(ConflictError):
            self.pay("100")

    def test_closed_period_rejects_payments_and_cancellation(self):
        self.pay("300")
        self.periods.close(self.admin, self.period.id)

        with pytest.raises(ConflictError):
            self.pay("100")
        with pytest.raises(ConflictError):
            self.ledger.cancel_unit_due(self.admin, self.due.id, confirm=True)

        # Recorded payments stay visible
        assert len(self.ledger.list_payments(self.admin, self.due.id)) == 1
        assert self.unit_dues.get(self.due.id).paid_amount == Decimal("300.00")

    def test_losing_the_race_leaves_no_payment(self):
        self.unit_dues.compare_and_save = lambda current, **changes: None

        with pytest.raises(ConflictError):
            self.pay("100")
        assert self.ledger.list_payments(self.admin, self.due.id) == []
        assert self.unit_dues.get(self.due.id).paid_amount == Decimal("0")

    def test_storage_failure_on_unit_due_leaves_no_payment(self):
        real_update_if = self.storage.update_if

        def failing_update_if(table, record_id, expected, data):
            if table == "unit_dues":
                raise OSError("database is locked")
            return real_update_if(table, record_id, expected, data)

        self.storage.update_if = failing_update_if

        with pytest.raises(TransientFailure):
            self.pay("300")

        self.storage.update_if = real_update_if
        assert self.ledger.list_payments(self.admin, self.due.id) == []
        assert self.paid_sum() == self.unit_dues.get(self.due.id).paid_amount == Decimal("0")
        # The due accepts the payment once storage recovers
        assert isinstance(self.pay("300"), Success)
        assert self.paid_sum() == self.unit_dues.get(self.due.id).paid_amount

    def test_stale_unit_due_cannot_be_saved(self):
        stale = self.unit_dues.get(self.due.id)
        self.pay("100")

        assert self.unit_dues.compare_and_save(stale, paid_amount=Decimal("5")) is None
        assert self.unit_dues.get(self.due.id).paid_amount == Decimal("100.00")

    def test_cancel_after_concurrent_cancel_is_success(self):
        stale = self.unit_dues.get(self.due.id)
        self.ledger.cancel_unit_due(self.admin, self.due.id)

        # First read sees the pre-cancel row, the reload after the failed swap does not
        reads = iter([stale])
        real_get = self.unit_dues.get
        self.unit_dues.get = lambda unit_due_id: next(reads, None) or real_get(unit_due_id)

        outcome = self.ledger.cancel_unit_due(self.admin, self.due.id)
        assert isinstance(outcome, Success)
        assert outcome.value.status == UnitDueStatus.CANCELLED

    def test_payment_audit_and_views(self):
        payment = self.pay("100").value
        events = self.audit_trail.get_events_by_type(AuditEventType.PAYMENT_RECORDED)
        assert events[0].metadata["receipt_number"] == payment.receipt_number
        assert events[0].user_id == "admin-1"

        resident = Caller(user_id="res-1", role=MemberRole.RESIDENT, organization_id=ORG,
                          unit_ids=frozenset({self.unit.id}))
        assert self.ledger.get_unit_due(resident, self.due.id).id == self.due.id
        assert len(self.ledger.list_payments(resident, self.due.id)) == 1

        neighbour = Caller(user_id="res-2", role=MemberRole.RESIDENT, organization_id=ORG,
                           unit_ids=frozenset({"other-unit"}))
        with pytest.raises(PermissionDeniedError):
            self.ledger.get_unit_due(neighbour, self.due.id)
