"""
Due type catalog endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import DuesSystem, ensure_scope, get_caller, get_dues_system
from .responses import due_type_to_dict
from .schemas import CreateDueTypeRequest, UpdateDueTypeRequest
from ..permissions import Caller, Permission, require_permission


router = APIRouter()


@router.get("")
def list_due_types(
    organization_id: str,
    is_active: Optional[bool] = None,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    """List due types of the organization"""
    require_permission(caller, Permission.VIEW_DUE_TYPES, organization_id)
    due_types = system.catalog.list(organization_id, is_active=is_active)
    return {"items": [due_type_to_dict(d) for d in due_types]}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_due_type(
    organization_id: str,
    request: CreateDueTypeRequest,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    """Create a due type"""
    due_type = system.catalog.create(
        caller,
        organization_id,
        name=request.name,
        description=request.description,
        default_amount=request.default_amount,
        category_amounts=request.category_amounts,
    )
    return due_type_to_dict(due_type)


@router.get("/{due_type_id}")
def get_due_type(
    organization_id: str,
    due_type_id: str,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    require_permission(caller, Permission.VIEW_DUE_TYPES, organization_id)
    due_type = system.catalog.get(due_type_id)
    ensure_scope(due_type.organization_id, organization_id, "Due type", due_type_id)
    return due_type_to_dict(due_type)


@router.put("/{due_type_id}")
def update_due_type(
    organization_id: str,
    due_type_id: str,
    request: UpdateDueTypeRequest,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    """Edit a due type; existing unit dues keep their amounts"""
    ensure_scope(system.catalog.get(due_type_id).organization_id, organization_id, "Due type", due_type_id)
    due_type = system.catalog.update(
        caller,
        due_type_id,
        name=request.name,
        description=request.description,
        default_amount=request.default_amount,
        category_amounts=request.category_amounts,
    )
    return due_type_to_dict(due_type)


@router.patch("/{due_type_id}/deactivate")
def deactivate_due_type(
    organization_id: str,
    due_type_id: str,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    ensure_scope(system.catalog.get(due_type_id).organization_id, organization_id, "Due type", due_type_id)
    return due_type_to_dict(system.catalog.deactivate(caller, due_type_id))


@router.delete("/{due_type_id}")
def delete_due_type(
    organization_id: str,
    due_type_id: str,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    """Delete a due type no unit due references"""
    ensure_scope(system.catalog.get(due_type_id).organization_id, organization_id, "Due type", due_type_id)
    system.catalog.delete(caller, due_type_id)
    return {"message": "Due type deleted successfully"}
