"""
Due Type Catalog Module

Organization-scoped billing categories (maintenance fee, heating share, ...)
with a default amount and optional per-unit-category overrides. Amounts are
copied into unit dues at accrual time, so editing a type never changes
obligations that already exist.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Currency, ZERO, parse_amount, quantize
from .directory import UnitCategory
from .errors import ConflictError, NotFoundError, ValidationError
from .permissions import Caller, Permission, require_permission
from .storage import StorageInterface, StorageRecord
from .unit_dues import UnitDueRepository


logger = logging.getLogger("dues_ledger.due_types")


@dataclass
class DueType(StorageRecord):
    """Named billing category"""
    organization_id: str
    name: str
    default_amount: Decimal
    description: Optional[str] = None
    category_amounts: Dict[UnitCategory, Decimal] = field(default_factory=dict)
    is_active: bool = True

    def amount_for(self, category: Optional[UnitCategory]) -> Decimal:
        """Override for the unit's category if one is set, else the default"""
        if category is not None and category in self.category_amounts:
            return self.category_amounts[category]
        return self.default_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'organization_id': self.organization_id,
            'name': self.name,
            'description': self.description,
            'default_amount': str(self.default_amount),
            'category_amounts': {c.value: str(a) for c, a in self.category_amounts.items()},
            'is_active': self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DueType':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            name=data['name'],
            description=data.get('description'),
            default_amount=Decimal(data['default_amount']),
            category_amounts={
                UnitCategory(k): Decimal(v) for k, v in (data.get('category_amounts') or {}).items()
            },
            is_active=data.get('is_active', True),
        )


class DueTypeCatalog:
    """Creates, edits and retires due types"""

    def __init__(self, storage: StorageInterface, unit_dues: UnitDueRepository,
                 audit_trail: AuditTrail, currency: Currency):
        self.storage = storage
        self.unit_dues = unit_dues
        self.audit_trail = audit_trail
        self.currency = currency
        self.table = "due_types"

    def create(
        self,
        caller: Caller,
        organization_id: str,
        name: str,
        default_amount: Any,
        description: Optional[str] = None,
        category_amounts: Optional[Dict[Any, Any]] = None
    ) -> DueType:
        """
        Create a due type

        Raises:
            ValidationError: Empty name, negative amount or unknown category
            PermissionDeniedError: Caller is not an admin of the organization
        """
        require_permission(caller, Permission.MANAGE_DUE_TYPES, organization_id)

        now = datetime.now(timezone.utc)
        due_type = DueType(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            name=self._validate_name(name),
            description=self._clean_description(description),
            default_amount=self._validate_amount(default_amount, "Default amount"),
            category_amounts=self._validate_category_amounts(category_amounts),
        )
        self._save(due_type)

        self.audit_trail.log_event(
            AuditEventType.DUE_TYPE_CREATED, "due_type", due_type.id,
            metadata={"name": due_type.name, "default_amount": due_type.default_amount},
            user_id=caller.user_id
        )
        logger.info("Due type %s created for organization %s", due_type.id, organization_id)
        return due_type

    def update(
        self,
        caller: Caller,
        due_type_id: str,
        name: Optional[str] = None,
        default_amount: Optional[Any] = None,
        description: Optional[str] = None,
        category_amounts: Optional[Dict[Any, Any]] = None
    ) -> DueType:
        """
        Edit a due type. Only the given fields change; ``category_amounts``
        replaces the whole override map when given.
        """
        due_type = self.get(due_type_id)
        require_permission(caller, Permission.MANAGE_DUE_TYPES, due_type.organization_id)

        if name is not None:
            due_type.name = self._validate_name(name)
        if description is not None:
            due_type.description = self._clean_description(description)
        if default_amount is not None:
            due_type.default_amount = self._validate_amount(default_amount, "Default amount")
        if category_amounts is not None:
            due_type.category_amounts = self._validate_category_amounts(category_amounts)
        due_type.updated_at = datetime.now(timezone.utc)
        self._save(due_type)

        self.audit_trail.log_event(
            AuditEventType.DUE_TYPE_UPDATED, "due_type", due_type.id,
            metadata={
                "name": due_type.name,
                "default_amount": due_type.default_amount,
                "category_amounts": {c.value: a for c, a in due_type.category_amounts.items()},
            },
            user_id=caller.user_id
        )
        return due_type

    def deactivate(self, caller: Caller, due_type_id: str) -> DueType:
        """Soft-retire a due type; existing unit dues are untouched"""
        due_type = self.get(due_type_id)
        require_permission(caller, Permission.MANAGE_DUE_TYPES, due_type.organization_id)

        if not due_type.is_active:
            return due_type

        due_type.is_active = False
        due_type.updated_at = datetime.now(timezone.utc)
        self._save(due_type)

        self.audit_trail.log_event(
            AuditEventType.DUE_TYPE_DEACTIVATED, "due_type", due_type.id,
            user_id=caller.user_id
        )
        logger.info("Due type %s deactivated", due_type.id)
        return due_type

    def delete(self, caller: Caller, due_type_id: str) -> None:
        """
        Hard-delete a due type that no unit due references

        Raises:
            ConflictError: If unit dues reference the type; deactivate it instead
        """
        due_type = self.get(due_type_id)
        require_permission(caller, Permission.MANAGE_DUE_TYPES, due_type.organization_id)

        if self.unit_dues.exists_for_due_type(due_type_id):
            raise ConflictError(
                "Due type is referenced by existing unit dues; deactivate it instead",
                {"due_type_id": due_type_id}
            )

        self.storage.delete(self.table, due_type_id)
        self.audit_trail.log_event(
            AuditEventType.DUE_TYPE_DELETED, "due_type", due_type_id,
            metadata={"name": due_type.name},
            user_id=caller.user_id
        )

    def find(self, due_type_id: str) -> Optional[DueType]:
        data = self.storage.load(self.table, due_type_id)
        return DueType.from_dict(data) if data else None

    def get(self, due_type_id: str) -> DueType:
        due_type = self.find(due_type_id)
        if not due_type:
            raise NotFoundError(f"Due type {due_type_id} not found")
        return due_type

    def list(self, organization_id: str, is_active: Optional[bool] = None) -> List[DueType]:
        """Due types of an organization sorted by name"""
        filters: Dict[str, Any] = {"organization_id": organization_id}
        if is_active is not None:
            filters["is_active"] = is_active
        due_types = [DueType.from_dict(d) for d in self.storage.find(self.table, filters)]
        due_types.sort(key=lambda d: (d.name.lower(), d.id))
        return due_types

    def _save(self, due_type: DueType) -> None:
        self.storage.save(self.table, due_type.id, due_type.to_dict())

    def _validate_name(self, name: Optional[str]) -> str:
        if not name or not name.strip():
            raise ValidationError("Name is required")
        return name.strip()

    def _clean_description(self, description: Optional[str]) -> Optional[str]:
        if description is None:
            return None
        return description.strip() or None

    def _validate_amount(self, value: Any, label: str) -> Decimal:
        try:
            amount = parse_amount(value)
        except ValueError as e:
            raise ValidationError(f"{label} is invalid: {e}")
        if amount < ZERO:
            raise ValidationError(f"{label} cannot be negative", {"amount": str(amount)})
        return quantize(amount, self.currency)

    def _validate_category_amounts(self, values: Optional[Dict[Any, Any]]) -> Dict[UnitCategory, Decimal]:
        result: Dict[UnitCategory, Decimal] = {}
        for key, value in (values or {}).items():
            category = UnitCategory.parse(key)
            result[category] = self._validate_amount(value, f"Amount for category '{category.value}'")
        return result
