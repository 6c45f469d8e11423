"""
Unit due and payment endpoints
"""

from fastapi import APIRouter, Depends

from .auth import DuesSystem, ensure_scope, get_caller, get_dues_system
from .responses import outcome_response, payment_to_dict, unit_due_to_dict
from .schemas import RecordPaymentRequest
from ..permissions import Caller


router = APIRouter()


@router.get("/{unit_due_id}")
def get_unit_due(
    organization_id: str,
    unit_due_id: str,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    ensure_scope(system.unit_dues.get(unit_due_id).organization_id, organization_id, "Unit due", unit_due_id)
    return unit_due_to_dict(system.payments.get_unit_due(caller, unit_due_id))


@router.post("/{unit_due_id}/payments")
def record_payment(
    organization_id: str,
    unit_due_id: str,
    request: RecordPaymentRequest,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    """Record a payment; answers 409 needs_confirmation for unconfirmed overpayments"""
    ensure_scope(system.unit_dues.get(unit_due_id).organization_id, organization_id, "Unit due", unit_due_id)
    outcome = system.payments.record_payment(
        caller, unit_due_id,
        amount=request.amount,
        paid_at=request.paid_at,
        method=request.payment_method,
        note=request.note,
        confirmed=request.confirmed,
    )
    return outcome_response(outcome, payment_to_dict)


@router.get("/{unit_due_id}/payments")
def list_payments(
    organization_id: str,
    unit_due_id: str,
    caller: Caller = Depends(get_caller),
    system: DuesSystem = Depends(get_dues_system)
):
    ensure_scope(system.unit_dues.get(unit_due_id).organization_id, organization_id, "Unit due", unit_due_id)
    payments = system.payments.list_payments(caller, unit_due_id)
    return {"items": [payment_to_dict(p) for p in payments]}
