"""
Organization Directory Module

Read-only view of the organization and unit master data owned by the
surrounding property-management application. The ledger never edits units;
the ``register_*`` methods exist so that data can be synced in (or seeded
for tests).
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .errors import NotFoundError, ValidationError
from .late_fees import LateFeeSettings
from .storage import StorageInterface, StorageRecord


class UnitCategory(Enum):
    """Unit size/usage categories used for due-type amount overrides"""
    SMALL = "small"
    LARGE = "large"
    COMMERCIAL = "commercial"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> 'UnitCategory':
        """Accept an enum member or its label, rejecting unknown labels"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(c.value for c in cls)
            raise ValidationError(
                f"Unknown unit category '{value}' (allowed: {allowed})",
                {"category": str(value)}
            )


@dataclass
class Unit(StorageRecord):
    """A billable apartment or shop"""
    organization_id: str
    unit_number: str
    block_name: Optional[str] = None
    category: Optional[UnitCategory] = None
    resident_name: Optional[str] = None
    is_active: bool = True

    @property
    def is_empty(self) -> bool:
        """A unit without a resident"""
        return not self.resident_name

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Unit':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            unit_number=data['unit_number'],
            block_name=data.get('block_name'),
            category=UnitCategory(data['category']) if data.get('category') else None,
            resident_name=data.get('resident_name'),
            is_active=data.get('is_active', True),
        )


@dataclass
class Organization(StorageRecord):
    """An organization (site or apartment building)"""
    name: str
    late_fee: Optional[LateFeeSettings] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'name': self.name,
            'late_fee': self.late_fee.to_dict() if self.late_fee else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Organization':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            late_fee=LateFeeSettings.from_dict(data['late_fee']) if data.get('late_fee') else None,
        )


class OrganizationDirectory:
    """Lookup of organizations and their units"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.organizations_table = "organizations"
        self.units_table = "units"

    def register_organization(self, name: str, organization_id: Optional[str] = None,
                              late_fee: Optional[LateFeeSettings] = None) -> Organization:
        now = datetime.now(timezone.utc)
        organization = Organization(
            id=organization_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            late_fee=late_fee,
        )
        self.storage.save(self.organizations_table, organization.id, organization.to_dict())
        return organization

    def set_late_fee_settings(self, organization_id: str,
                              settings: Optional[LateFeeSettings]) -> Organization:
        organization = self.get_organization(organization_id)
        organization.late_fee = settings
        organization.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.organizations_table, organization.id, organization.to_dict())
        return organization

    def find_organization(self, organization_id: str) -> Optional[Organization]:
        data = self.storage.load(self.organizations_table, organization_id)
        return Organization.from_dict(data) if data else None

    def get_organization(self, organization_id: str) -> Organization:
        organization = self.find_organization(organization_id)
        if not organization:
            raise NotFoundError(f"Organization {organization_id} not found")
        return organization

    def late_fee_settings(self, organization_id: str) -> Optional[LateFeeSettings]:
        organization = self.find_organization(organization_id)
        return organization.late_fee if organization else None

    def register_unit(
        self,
        organization_id: str,
        unit_number: str,
        block_name: Optional[str] = None,
        category: Optional[Any] = None,
        resident_name: Optional[str] = None,
        is_active: bool = True,
        unit_id: Optional[str] = None
    ) -> Unit:
        """Insert or replace a unit record"""
        now = datetime.now(timezone.utc)
        unit = Unit(
            id=unit_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            unit_number=unit_number,
            block_name=block_name,
            category=UnitCategory.parse(category) if category else None,
            resident_name=resident_name,
            is_active=is_active,
        )
        self.storage.save(self.units_table, unit.id, unit.to_dict())
        return unit

    def get_unit(self, unit_id: str) -> Optional[Unit]:
        data = self.storage.load(self.units_table, unit_id)
        return Unit.from_dict(data) if data else None

    def list_units(self, organization_id: str, active_only: bool = True) -> List[Unit]:
        """Units of an organization ordered by block then unit number"""
        units = [
            Unit.from_dict(data)
            for data in self.storage.find(self.units_table, {"organization_id": organization_id})
        ]
        if active_only:
            units = [u for u in units if u.is_active]
        units.sort(key=lambda u: (u.block_name or "", u.unit_number, u.id))
        return units

    def units_by_id(self, organization_id: str) -> Dict[str, Unit]:
        return {u.id: u for u in self.list_units(organization_id, active_only=False)}
