"""
Response helpers shared by the routers
"""

from typing import Any, Callable, Dict

from fastapi.responses import JSONResponse

from ..due_types import DueType
from ..outcomes import NeedsConfirmation, Outcome
from ..payments import Payment
from ..periods import DuesPeriod
from ..unit_dues import UnitDue


def outcome_response(outcome: Outcome, render: Callable[[Any], Dict[str, Any]]) -> Any:
    """Success renders the value; NeedsConfirmation becomes a 409 the client can resubmit"""
    if isinstance(outcome, NeedsConfirmation):
        return JSONResponse(status_code=409, content=outcome.to_dict())
    return render(outcome.value)


def due_type_to_dict(due_type: DueType) -> Dict[str, Any]:
    return {
        "id": due_type.id,
        "name": due_type.name,
        "description": due_type.description,
        "default_amount": str(due_type.default_amount),
        "category_amounts": {c.value: str(a) for c, a in due_type.category_amounts.items()},
        "is_active": due_type.is_active,
        "created_at": due_type.created_at.isoformat(),
    }


def period_to_dict(period: DuesPeriod) -> Dict[str, Any]:
    return {
        "id": period.id,
        "name": period.name,
        "start_date": period.start_date.isoformat(),
        "due_date": period.due_date.isoformat(),
        "status": period.status.value,
        "created_by": period.created_by,
        "closed_at": period.closed_at.isoformat() if period.closed_at else None,
        "failure_reason": period.failure_reason,
    }


def unit_due_to_dict(unit_due: UnitDue) -> Dict[str, Any]:
    return {
        "id": unit_due.id,
        "period_id": unit_due.period_id,
        "unit_id": unit_due.unit_id,
        "due_type_id": unit_due.due_type_id,
        "amount": str(unit_due.amount),
        "paid_amount": str(unit_due.paid_amount),
        "remaining_amount": str(unit_due.remaining_amount),
        "status": unit_due.status.value,
        "cancelled_at": unit_due.cancelled_at.isoformat() if unit_due.cancelled_at else None,
    }


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "unit_due_id": payment.unit_due_id,
        "receipt_number": payment.receipt_number,
        "amount": str(payment.amount),
        "paid_at": payment.paid_at.isoformat(),
        "payment_method": payment.payment_method.value,
        "collected_by": payment.collected_by,
        "note": payment.note,
        "is_overpayment": payment.is_overpayment,
        "overpayment_amount": str(payment.overpayment_amount) if payment.overpayment_amount is not None else None,
        "is_voided": payment.is_voided,
    }
