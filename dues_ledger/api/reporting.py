"""
Summary and resident self-service endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .auth import DuesSystem, get_caller, get_dues_system
from ..permissions import Caller


router = APIRouter()


@router.get("/dues-summary")
def get_dues_summary(
    organization_id: str,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    """Pending and collected totals across all periods"""
    return system.reporting.dues_summary(caller, organization_id).to_dict()


@router.get("/my-dues")
def get_my_dues(
    organization_id: str,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    dues = system.reporting.my_dues(caller, organization_id)
    return {"items": [d.to_dict() for d in dues]}


@router.get("/my-payments")
def get_my_payments(
    organization_id: str,
    page: int = 1,
    page_size: Optional[int] = None,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    result = system.reporting.my_payments(caller, organization_id, page, page_size)
    return {
        "items": [p.to_dict() for p in result.items],
        "total_count": result.total_count,
        "page": result.page,
        "page_size": result.page_size,
    }
