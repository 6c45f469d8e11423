"""
Dues period endpoints: lifecycle, accrual and the period's unit dues

Engine calls block, so the endpoints are plain functions and FastAPI runs
them in its threadpool.
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import DuesSystem, ensure_scope, get_caller, get_dues_system
from .responses import outcome_response, period_to_dict, unit_due_to_dict
from .schemas import AccrueRequest, CreatePeriodRequest, UpdatePeriodRequest
from ..accrual import AccrualPreview
from ..permissions import Caller


router = APIRouter()


def _scoped_period(system: DuesSystem, organization_id: str, period_id: str):
    period = system.periods.get(period_id)
    ensure_scope(period.organization_id, organization_id, "Period", period_id)
    return period


@router.get("")
def list_periods(
    organization_id: str,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    """List periods with collection totals, newest first"""
    summaries = system.reporting.period_summaries(caller, organization_id)
    return {"items": [s.to_dict() for s in summaries]}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_period(
    organization_id: str,
    request: CreatePeriodRequest,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    period = system.periods.create(
        caller, organization_id,
        name=request.name,
        start_date=request.start_date,
        due_date=request.due_date,
    )
    return period_to_dict(period)


@router.get("/{period_id}")
def get_period(
    organization_id: str,
    period_id: str,
    status: Optional[str] = None,
    page: int = 1,
    page_size: Optional[int] = None,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    """Period detail with a filtered page of its unit dues"""
    _scoped_period(system, organization_id, period_id)
    detail = system.reporting.period_detail(caller, period_id, status, page, page_size)
    return detail.to_dict()


@router.put("/{period_id}")
def update_period(
    organization_id: str,
    period_id: str,
    request: UpdatePeriodRequest,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    _scoped_period(system, organization_id, period_id)
    period = system.periods.update(
        caller, period_id,
        name=request.name,
        start_date=request.start_date,
        due_date=request.due_date,
    )
    return period_to_dict(period)


@router.delete("/{period_id}")
def delete_period(
    organization_id: str,
    period_id: str,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    _scoped_period(system, organization_id, period_id)
    system.periods.delete(caller, period_id)
    return {"message": "Period deleted successfully"}


@router.post("/{period_id}/accrue")
def accrue_period(
    organization_id: str,
    period_id: str,
    request: AccrueRequest,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    """Preview (confirmed=false) or run (confirmed=true) the accrual"""
    _scoped_period(system, organization_id, period_id)
    result = system.accrual.accrue(
        caller, period_id,
        due_type_ids=request.due_type_ids,
        include_empty_units=request.include_empty_units,
        confirmed=request.confirmed,
    )
    if isinstance(result, AccrualPreview):
        return {"confirmed": False, "preview": result.to_dict()}
    return {"confirmed": True, **result.to_dict()}


@router.post("/{period_id}/close")
def close_period(
    organization_id: str,
    period_id: str,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    _scoped_period(system, organization_id, period_id)
    return period_to_dict(system.periods.close(caller, period_id))


@router.get("/{period_id}/unit-dues")
def list_period_unit_dues(
    organization_id: str,
    period_id: str,
    status: Optional[str] = None,
    page: int = 1,
    page_size: Optional[int] = None,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    _scoped_period(system, organization_id, period_id)
    result = system.reporting.list_unit_dues(caller, period_id, status, page, page_size)
    return {
        "items": [item.to_dict() for item in result.items],
        "total_count": result.total_count,
        "page": result.page,
        "page_size": result.page_size,
        "total_pages": result.total_pages,
    }


@router.delete("/{period_id}/unit-dues/{unit_due_id}")
def cancel_unit_due(
    organization_id: str,
    period_id: str,
    unit_due_id: str,
    confirm: bool = False,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    """Cancel a unit due; answers 409 needs_confirmation while payments exist"""
    _scoped_period(system, organization_id, period_id)
    unit_due = system.unit_dues.get(unit_due_id)
    ensure_scope(unit_due.period_id, period_id, "Unit due", unit_due_id)

    outcome = system.payments.cancel_unit_due(caller, unit_due_id, confirm=confirm)
    return outcome_response(outcome, unit_due_to_dict)
