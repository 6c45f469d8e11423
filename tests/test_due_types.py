"""
Tests for the due type catalog
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from dues_ledger.audit import AuditTrail, AuditEventType
from dues_ledger.currency import Currency
from dues_ledger.directory import UnitCategory
from dues_ledger.due_types import DueTypeCatalog
from dues_ledger.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from dues_ledger.permissions import Caller, MemberRole
from dues_ledger.storage import InMemoryStorage
from dues_ledger.unit_dues import UnitDue, UnitDueRepository


ORG = "org-1"


class TestDueTypeCatalog:
    """Create, edit, deactivate and delete due types"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.unit_dues = UnitDueRepository(self.storage)
        self.catalog = DueTypeCatalog(self.storage, self.unit_dues, self.audit_trail, Currency.TRY)
        self.admin = Caller(user_id="admin-1", role=MemberRole.ADMIN, organization_id=ORG)

    def test_create_due_type(self):
        due_type = self.catalog.create(
            self.admin, ORG, "Maintenance", "500",
            description="Monthly maintenance",
            category_amounts={"large": "750", "commercial": Decimal("1200.5")}
        )

        assert due_type.name == "Maintenance"
        assert due_type.default_amount == Decimal("500.00")
        assert due_type.category_amounts == {
            UnitCategory.LARGE: Decimal("750.00"),
            UnitCategory.COMMERCIAL: Decimal("1200.50"),
        }
        assert due_type.is_active

        loaded = self.catalog.get(due_type.id)
        assert loaded.category_amounts[UnitCategory.LARGE] == Decimal("750.00")
        assert loaded.amount_for(UnitCategory.SMALL) == Decimal("500.00")
        assert loaded.amount_for(None) == Decimal("500.00")

        events = self.audit_trail.get_events_for_entity("due_type", due_type.id)
        assert events[0].event_type == AuditEventType.DUE_TYPE_CREATED
        assert events[0].user_id == "admin-1"

    def test_zero_amount_allowed(self):
        due_type = self.catalog.create(self.admin, ORG, "Free month", "0")
        assert due_type.default_amount == Decimal("0.00")

    def test_validation(self):
        with pytest.raises(ValidationError):
            self.catalog.create(self.admin, ORG, "  ", "500")
        with pytest.raises(ValidationError):
            self.catalog.create(self.admin, ORG, "Maintenance", "-1")
        with pytest.raises(ValidationError):
            self.catalog.create(self.admin, ORG, "Maintenance", "500", category_amounts={"large": "-5"})
        with pytest.raises(ValidationError):
            self.catalog.create(self.admin, ORG, "Maintenance", "abc")
        with pytest.raises(ValidationError):
            self.catalog.create(self.admin, ORG, "Maintenance", 500.0)

    def test_unknown_category_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            self.catalog.create(self.admin, ORG, "Maintenance", "500", category_amounts={"huge": "900"})
        assert "huge" in str(exc_info.value)

    def test_only_admin_may_mutate(self):
        board = Caller(user_id="board-1", role=MemberRole.BOARD_MEMBER, organization_id=ORG)
        resident = Caller(user_id="res-1", role=MemberRole.RESIDENT, organization_id=ORG)
        for caller in (board, resident):
            with pytest.raises(PermissionDeniedError):
                self.catalog.create(caller, ORG, "Maintenance", "500")

        due_type = self.catalog.create(self.admin, ORG, "Maintenance", "500")
        with pytest.raises(PermissionDeniedError):
            self.catalog.deactivate(board, due_type.id)

    def test_admin_of_other_organization_denied(self):
        outsider = Caller(user_id="admin-2", role=MemberRole.ADMIN, organization_id="org-2")
        with pytest.raises(PermissionDeniedError):
            self.catalog.create(outsider, ORG, "Maintenance", "500")

    def test_update(self):
        due_type = self.catalog.create(self.admin, ORG, "Maintenance", "500",
                                       category_amounts={"large": "750"})
        updated = self.catalog.update(self.admin, due_type.id, default_amount="550",
                                      category_amounts={"small": "400"})

        assert updated.name == "Maintenance"
        assert updated.default_amount == Decimal("550.00")
        assert updated.category_amounts == {UnitCategory.SMALL: Decimal("400.00")}
        assert self.catalog.get(due_type.id).default_amount == Decimal("550.00")

    def test_update_does_not_touch_existing_unit_dues(self):
        due_type = self.catalog.create(self.admin, ORG, "Maintenance", "500")
        now = datetime.now(timezone.utc)
        self.unit_dues.insert_batch([UnitDue(
            id="due-1", created_at=now, updated_at=now, organization_id=ORG,
            period_id="P1", unit_id="U1", due_type_id=due_type.id, amount=Decimal("500.00")
        )])

        self.catalog.update(self.admin, due_type.id, default_amount="900")
        assert self.unit_dues.get("due-1").amount == Decimal("500.00")

    def test_deactivate_is_idempotent(self):
        due_type = self.catalog.create(self.admin, ORG, "Maintenance", "500")

        assert not self.catalog.deactivate(self.admin, due_type.id).is_active
        assert not self.catalog.deactivate(self.admin, due_type.id).is_active
        events = self.audit_trail.get_events_by_type(AuditEventType.DUE_TYPE_DEACTIVATED)
        assert len(events) == 1

    def test_delete_unreferenced(self):
        due_type = self.catalog.create(self.admin, ORG, "Maintenance", "500")
        self.catalog.delete(self.admin, due_type.id)

        assert self.catalog.find(due_type.id) is None
        with pytest.raises(NotFoundError):
            self.catalog.get(due_type.id)

    def test_delete_referenced_conflicts(self):
        due_type = self.catalog.create(self.admin, ORG, "Maintenance", "500")
        now = datetime.now(timezone.utc)
        self.unit_dues.insert_batch([UnitDue(
            id="due-1", created_at=now, updated_at=now, organization_id=ORG,
            period_id="P1", unit_id="U1", due_type_id=due_type.id, amount=Decimal("500.00")
        )])

        with pytest.raises(ConflictError):
            self.catalog.delete(self.admin, due_type.id)
        # Deactivation is always allowed
        assert not self.catalog.deactivate(self.admin, due_type.id).is_active

    def test_list(self):
        self.catalog.create(self.admin, ORG, "water", "100")
        heating = self.catalog.create(self.admin, ORG, "Heating", "300")
        self.catalog.create(self.admin, ORG, "Maintenance", "500")
        self.catalog.create(
            Caller(user_id="admin-2", role=MemberRole.ADMIN, organization_id="org-2"),
            "org-2", "Elsewhere", "1"
        )
        self.catalog.deactivate(self.admin, heating.id)

        assert [d.name for d in self.catalog.list(ORG)] == ["Heating", "Maintenance", "water"]
        assert [d.name for d in self.catalog.list(ORG, is_active=True)] == ["Maintenance", "water"]
        assert [d.name for d in self.catalog.list(ORG, is_active=False)] == ["Heating"]
