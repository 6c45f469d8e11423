"""
Tests for dues reporting: period listings, summaries and resident views
"""

import pytest
from datetime import date
from decimal import Decimal

from dues_ledger.api.auth import DuesSystem
from dues_ledger.config import DuesLedgerConfig
from dues_ledger.errors import PermissionDeniedError, ValidationError
from dues_ledger.late_fees import LateFeeSettings
from dues_ledger.permissions import Caller, MemberRole
from dues_ledger.unit_dues import UnitDueStatus


ORG = "org-1"
TODAY = date(2024, 2, 10)  # 10 days after the January due date


class TestDuesReporting:
    """Read-side views over one accrued period"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = DuesSystem(DuesLedgerConfig(database_url="memory://"))
        self.reporting = self.system.reporting
        self.admin = Caller(user_id="admin-1", role=MemberRole.ADMIN, organization_id=ORG)
        self.board = Caller(user_id="board-1", role=MemberRole.BOARD_MEMBER, organization_id=ORG)

        directory = self.system.directory
        directory.register_organization(
            "Sunset Residences", organization_id=ORG,
            late_fee=LateFeeSettings(rate=Decimal("0.001"))
        )
        directory.register_unit(ORG, "1", block_name="A", category="small",
                                resident_name="Ayşe", unit_id="u-a1")
        directory.register_unit(ORG, "2", block_name="A", category="large",
                                resident_name="Bora", unit_id="u-a2")
        directory.register_unit(ORG, "1", block_name="B", unit_id="u-b1")

        maintenance = self.system.catalog.create(
            self.admin, ORG, "Maintenance", "500", category_amounts={"large": "750"}
        )
        heating = self.system.catalog.create(self.admin, ORG, "Heating", "200")
        self.due_type_ids = [maintenance.id, heating.id]

        self.period = self.system.periods.create(
            self.admin, ORG, "January 2024", date(2024, 1, 1), date(2024, 1, 31)
        )
        self.system.accrual.confirm(
            self.admin, self.period.id, self.due_type_ids, include_empty_units=True
        )

        dues = {
            (d.unit_id, d.due_type_id): d
            for d in self.system.unit_dues.for_period(self.period.id)
        }
        self.a1_maintenance = dues[("u-a1", maintenance.id)]
        self.a2_maintenance = dues[("u-a2", maintenance.id)]
        self.b1_heating = dues[("u-b1", heating.id)]

        payments = self.system.payments
        payments.record_payment(self.admin, self.a1_maintenance.id, "500")
        payments.record_payment(self.admin, self.a2_maintenance.id, "300")
        payments.cancel_unit_due(self.admin, self.b1_heating.id)

    def resident(self, *unit_ids):
        return Caller(user_id="res-1", role=MemberRole.RESIDENT, organization_id=ORG,
                      unit_ids=frozenset(unit_ids))

    def test_list_unit_dues_order_and_enrichment(self):
        page = self.reporting.list_unit_dues(self.admin, self.period.id, today=TODAY)

        assert page.total_count == 6
        assert [(v.block_name, v.unit_number, v.due_type_name) for v in page.items] == [
            ("A", "1", "Heating"), ("A", "1", "Maintenance"),
            ("A", "2", "Heating"), ("A", "2", "Maintenance"),
            ("B", "1", "Heating"), ("B", "1", "Maintenance"),
        ]

        first = page.items[0]
        assert first.resident_name == "Ayşe"
        assert first.amount == Decimal("200.00")
        assert first.is_overdue
        assert first.overdue_days == 10
        assert first.estimated_late_fee == Decimal("2.00")

        paid = page.items[1]
        assert paid.status == UnitDueStatus.PAID
        assert not paid.is_overdue
        assert paid.estimated_late_fee == Decimal("0.00")

        large = page.items[3]
        assert large.amount == Decimal("750.00")
        assert large.remaining_amount == Decimal("450.00")
        assert large.estimated_late_fee == Decimal("4.50")

        cancelled = page.items[4]
        assert cancelled.status == UnitDueStatus.CANCELLED
        assert cancelled.resident_name is None
        assert cancelled.remaining_amount == Decimal("0")
        assert not cancelled.is_overdue

    def test_status_filter(self):
        page = self.reporting.list_unit_dues(self.admin, self.period.id, status="partial", today=TODAY)
        assert [v.id for v in page.items] == [self.a2_maintenance.id]

        page = self.reporting.list_unit_dues(self.admin, self.period.id, status="pending", today=TODAY)
        assert page.total_count == 3

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            self.reporting.list_unit_dues(self.admin, self.period.id, status="overdue")

    def test_paging(self):
        page = self.reporting.list_unit_dues(self.admin, self.period.id, page=2, page_size=4)

        assert page.total_count == 6
        assert page.total_pages == 2
        assert [(v.block_name, v.due_type_name) for v in page.items] == [
            ("B", "Heating"), ("B", "Maintenance")
        ]
        assert self.reporting.list_unit_dues(self.admin, self.period.id, page=3, page_size=4).items == []

    def test_page_size_capped(self):
        page = self.reporting.list_unit_dues(self.admin, self.period.id, page_size=10_000)
        assert page.page_size == self.system.config.max_page_size

    def test_invalid_paging_rejected(self):
        with pytest.raises(ValidationError):
            self.reporting.list_unit_dues(self.admin, self.period.id, page=0)
        with pytest.raises(ValidationError):
            self.reporting.list_unit_dues(self.admin, self.period.id, page_size=-1)

    def test_listing_permissions(self):
        assert self.reporting.list_unit_dues(self.board, self.period.id).total_count == 6
        with pytest.raises(PermissionDeniedError):
            self.reporting.list_unit_dues(self.resident("u-a1"), self.period.id)

    def test_no_late_fee_without_settings(self):
        self.system.directory.set_late_fee_settings(ORG, None)
        page = self.reporting.list_unit_dues(self.admin, self.period.id, today=TODAY)

        assert page.items[0].is_overdue
        assert page.items[0].estimated_late_fee is None

    def test_period_summaries(self):
        self.system.periods.create(
            self.admin, ORG, "February 2024", date(2024, 2, 1), date(2024, 2, 29)
        )
        summaries = self.reporting.period_summaries(self.resident("u-a1"), ORG)

        assert [s.period.name for s in summaries] == ["February 2024", "January 2024"]
        february, january = summaries
        assert february.total_dues == 0
        assert february.collected_amount == Decimal("0")

        # The cancelled heating due is left out of the totals
        assert january.total_dues == 5
        assert january.paid_count == 1
        assert january.total_amount == Decimal("2150.00")
        assert january.collected_amount == Decimal("800.00")
        assert january.to_dict()["status"] == "active"

    def test_period_detail(self):
        detail = self.reporting.period_detail(self.admin, self.period.id, status="paid", today=TODAY)

        assert detail.summary.total_dues == 5
        assert [v.id for v in detail.unit_dues.items] == [self.a1_maintenance.id]
        data = detail.to_dict()
        assert data["name"] == "January 2024"
        assert data["unit_dues"]["total_count"] == 1

    def test_dues_summary(self):
        summary = self.reporting.dues_summary(self.admin, ORG, today=TODAY)

        assert summary.total_pending_amount == Decimal("1350.00")
        assert summary.total_pending_dues == 4
        assert summary.total_collected_amount == Decimal("800.00")
        assert summary.active_periods == 1
        assert summary.overdue_dues == 4

    def test_dues_summary_before_due_date(self):
        summary = self.reporting.dues_summary(self.admin, ORG, today=date(2024, 1, 20))
        assert summary.overdue_dues == 0

    def test_dues_summary_denied_to_residents(self):
        with pytest.raises(PermissionDeniedError):
            self.reporting.dues_summary(self.resident("u-a1"), ORG)

    def test_my_dues(self):
        dues = self.reporting.my_dues(self.resident("u-a2"), ORG, today=TODAY)

        assert sorted(d.view.due_type_name for d in dues) == ["Heating", "Maintenance"]
        assert all(d.period_name == "January 2024" for d in dues)

        maintenance = next(d for d in dues if d.view.due_type_name == "Maintenance")
        data = maintenance.to_dict()
        assert data["remaining_amount"] == "450.00"
        assert data["calculated_late_fee"] == "4.50"
        assert data["due_date"] == "2024-01-31"
        assert "estimated_late_fee" not in data

    def test_my_dues_newest_period_first(self):
        february = self.system.periods.create(
            self.admin, ORG, "February 2024", date(2024, 2, 1), date(2024, 2, 29)
        )
        self.system.accrual.confirm(self.admin, february.id, self.due_type_ids[1:])

        dues = self.reporting.my_dues(self.resident("u-a2"), ORG, today=TODAY)
        assert [d.period_name for d in dues] == ["February 2024", "January 2024", "January 2024"]
        assert not dues[0].view.is_overdue

    def test_my_dues_excludes_cancelled_and_other_units(self):
        dues = self.reporting.my_dues(self.resident("u-b1"), ORG, today=TODAY)
        assert [d.view.due_type_name for d in dues] == ["Maintenance"]

        assert self.reporting.my_dues(self.resident(), ORG) == []

    def test_my_payments(self):
        self.system.payments.record_payment(self.admin, self.a2_maintenance.id, "100")
        page = self.reporting.my_payments(self.resident("u-a2"), ORG)

        assert page.total_count == 2
        assert [p.receipt_number for p in page.items] == ["RCP-000003", "RCP-000002"]
        latest = page.items[0]
        assert latest.amount == Decimal("100.00")
        assert latest.period_name == "January 2024"
        assert latest.due_type_name == "Maintenance"
        assert (latest.block_name, latest.unit_number) == ("A", "2")
        assert latest.collected_by == "admin-1"
        assert latest.payment_method == "cash"

    def test_my_payments_paging(self):
        self.system.payments.record_payment(self.admin, self.a2_maintenance.id, "100")
        page = self.reporting.my_payments(self.resident("u-a2"), ORG, page=2, page_size=1)

        assert page.total_count == 2
        assert [p.receipt_number for p in page.items] == ["RCP-000002"]

    def test_my_payments_hides_voided(self):
        self.system.payments.cancel_unit_due(self.admin, self.a1_maintenance.id, confirm=True)
        assert self.reporting.my_payments(self.resident("u-a1"), ORG).items == []
