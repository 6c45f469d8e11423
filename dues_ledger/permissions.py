"""
Role-Based Access Module

Authentication is external: callers arrive with their organization role
already resolved. This module maps those roles to ledger permissions.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set

from .errors import PermissionDeniedError


class MemberRole(Enum):
    """Organization membership roles"""
    ADMIN = "admin"
    BOARD_MEMBER = "board_member"
    RESIDENT = "resident"


class Permission(Enum):
    """Ledger permissions"""
    # Catalog permissions
    VIEW_DUE_TYPES = "view_due_types"
    MANAGE_DUE_TYPES = "manage_due_types"

    # Period permissions
    VIEW_PERIODS = "view_periods"
    MANAGE_PERIODS = "manage_periods"
    RUN_ACCRUAL = "run_accrual"
    CLOSE_PERIOD = "close_period"

    # Ledger permissions
    VIEW_UNIT_DUES = "view_unit_dues"
    RECORD_PAYMENT = "record_payment"
    CANCEL_UNIT_DUE = "cancel_unit_due"

    # Resident self-service
    VIEW_OWN_DUES = "view_own_dues"


ROLE_PERMISSIONS: Dict[MemberRole, FrozenSet[Permission]] = {
    MemberRole.ADMIN: frozenset(Permission),
    MemberRole.BOARD_MEMBER: frozenset({
        Permission.VIEW_DUE_TYPES,
        Permission.VIEW_PERIODS,
        Permission.VIEW_UNIT_DUES,
        Permission.RECORD_PAYMENT,
        Permission.VIEW_OWN_DUES,
    }),
    MemberRole.RESIDENT: frozenset({
        Permission.VIEW_DUE_TYPES,
        Permission.VIEW_PERIODS,
        Permission.VIEW_OWN_DUES,
    }),
}


@dataclass(frozen=True)
class Caller:
    """The authenticated member invoking an operation"""
    user_id: str
    role: MemberRole
    organization_id: Optional[str] = None
    unit_ids: FrozenSet[str] = field(default_factory=frozenset)

    def has_permission(self, permission: Permission) -> bool:
        """Check if caller's role grants a specific permission"""
        return permission in ROLE_PERMISSIONS.get(self.role, frozenset())

    def has_any_permission(self, permissions: Set[Permission]) -> bool:
        return bool(ROLE_PERMISSIONS.get(self.role, frozenset()) & permissions)


def require_permission(caller: Caller, permission: Permission,
                       organization_id: Optional[str] = None) -> None:
    """
    Raise PermissionDeniedError unless the caller may perform the operation.

    When both the caller and the target carry an organization id they must
    match, so a member of one organization cannot touch another's ledger.
    """
    if not caller.has_permission(permission):
        raise PermissionDeniedError(
            f"Role '{caller.role.value}' is not allowed to {permission.value.replace('_', ' ')}",
            {"permission": permission.value}
        )
    if organization_id and caller.organization_id and caller.organization_id != organization_id:
        raise PermissionDeniedError(
            "Caller is not a member of this organization",
            {"organization_id": organization_id}
        )
