"""
Tests for role based permissions
"""

import pytest

from dues_ledger.errors import PermissionDeniedError
from dues_ledger.permissions import Caller, MemberRole, Permission, require_permission


class TestRolePermissions:
    """Role to permission mapping"""

    def test_admin_has_every_permission(self):
        admin = Caller(user_id="admin-1", role=MemberRole.ADMIN)
        assert all(admin.has_permission(p) for p in Permission)

    def test_board_member(self):
        """Board members collect money but do not manage the ledger"""
        board = Caller(user_id="board-1", role=MemberRole.BOARD_MEMBER)
        assert board.has_permission(Permission.RECORD_PAYMENT)
        assert board.has_permission(Permission.VIEW_UNIT_DUES)
        assert not board.has_permission(Permission.CANCEL_UNIT_DUE)
        assert not board.has_permission(Permission.RUN_ACCRUAL)
        assert not board.has_permission(Permission.CLOSE_PERIOD)
        assert not board.has_permission(Permission.MANAGE_DUE_TYPES)

    def test_resident(self):
        resident = Caller(user_id="res-1", role=MemberRole.RESIDENT)
        assert resident.has_permission(Permission.VIEW_OWN_DUES)
        assert not resident.has_permission(Permission.VIEW_UNIT_DUES)
        assert not resident.has_any_permission({Permission.RECORD_PAYMENT, Permission.RUN_ACCRUAL})


class TestRequirePermission:
    """Permission and organization checks"""

    def test_missing_permission(self):
        resident = Caller(user_id="res-1", role=MemberRole.RESIDENT, organization_id="org-1")
        with pytest.raises(PermissionDeniedError) as exc_info:
            require_permission(resident, Permission.RECORD_PAYMENT, "org-1")
        assert exc_info.value.details["permission"] == "record_payment"

    def test_other_organization(self):
        admin = Caller(user_id="admin-1", role=MemberRole.ADMIN, organization_id="org-1")
        require_permission(admin, Permission.RUN_ACCRUAL, "org-1")
        with pytest.raises(PermissionDeniedError):
            require_permission(admin, Permission.RUN_ACCRUAL, "org-2")

    def test_caller_without_organization(self):
        admin = Caller(user_id="admin-1", role=MemberRole.ADMIN)
        require_permission(admin, Permission.RUN_ACCRUAL, "org-2")
