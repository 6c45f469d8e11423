"""
System wiring and caller resolution dependencies

Authentication happens upstream; the gateway forwards the resolved member
as ``X-User-Id``, ``X-User-Role`` and ``X-Unit-Ids`` (comma separated).
"""

from typing import Optional

from fastapi import Header, HTTPException

from ..accrual import AccrualEngine
from ..audit import AuditTrail
from ..config import DuesLedgerConfig, get_config
from ..currency import Currency
from ..directory import OrganizationDirectory
from ..due_types import DueTypeCatalog
from ..errors import NotFoundError, PermissionDeniedError
from ..payments import PaymentLedger
from ..periods import PeriodLifecycleManager
from ..permissions import Caller, MemberRole
from ..reporting import DuesReporting
from ..storage import StorageInterface, create_storage
from ..unit_dues import UnitDueRepository


class DuesSystem:
    """Dues ledger with all components initialized"""

    def __init__(self, config: Optional[DuesLedgerConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.currency = Currency.from_code(self.config.currency)

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)

        # Initialize components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.directory = OrganizationDirectory(self.storage)
        self.unit_dues = UnitDueRepository(self.storage)
        self.catalog = DueTypeCatalog(self.storage, self.unit_dues, self.audit_trail, self.currency)
        self.periods = PeriodLifecycleManager(self.storage, self.unit_dues, self.audit_trail)
        self.accrual = AccrualEngine(
            self.directory, self.catalog, self.periods, self.unit_dues,
            self.audit_trail, self.currency, batch_size=self.config.accrual_batch_size
        )
        self.payments = PaymentLedger(
            self.storage, self.unit_dues, self.periods, self.audit_trail,
            self.currency, receipt_prefix=self.config.receipt_prefix
        )
        self.reporting = DuesReporting(
            self.directory, self.catalog, self.periods, self.unit_dues, self.payments,
            self.currency, default_page_size=self.config.default_page_size,
            max_page_size=self.config.max_page_size
        )

    def close(self) -> None:
        self.storage.close()


# Global dues system instance, created on first request
dues_system: Optional[DuesSystem] = None


def get_dues_system() -> DuesSystem:
    global dues_system
    if dues_system is None:
        dues_system = DuesSystem()
    return dues_system


def get_caller(
    organization_id: str,
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_unit_ids: Optional[str] = Header(None)
) -> Caller:
    """Build the caller for the organization in the request path"""
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=401, detail="Missing X-User-Id or X-User-Role header")

    try:
        role = MemberRole(x_user_role.strip().lower())
    except ValueError:
        raise PermissionDeniedError(f"Unknown role '{x_user_role}'")

    unit_ids = frozenset(u.strip() for u in (x_unit_ids or "").split(",") if u.strip())
    return Caller(
        user_id=x_user_id,
        role=role,
        organization_id=organization_id,
        unit_ids=unit_ids,
    )


def ensure_scope(entity_organization_id: str, organization_id: str, label: str, entity_id: str) -> None:
    """Entities of another organization are reported as missing"""
    if entity_organization_id != organization_id:
        raise NotFoundError(f"{label} {entity_id} not found")
