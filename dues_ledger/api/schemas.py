"""
Pydantic schemas for API requests
"""

from datetime import date, datetime
from typing import Dict, List, Optional, Union
from pydantic import BaseModel, Field


# Amounts travel as strings (or whole numbers) so no float ever touches money
AmountField = Union[str, int]


# Due type schemas
class CreateDueTypeRequest(BaseModel):
    name: str
    description: Optional[str] = None
    default_amount: AmountField = Field(..., description="Decimal amount as string")
    category_amounts: Optional[Dict[str, AmountField]] = Field(
        None, description="Per-category overrides (small, large, commercial, other)"
    )


class UpdateDueTypeRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    default_amount: Optional[AmountField] = None
    category_amounts: Optional[Dict[str, AmountField]] = None


# Period schemas
class CreatePeriodRequest(BaseModel):
    name: str
    start_date: date
    due_date: date


class UpdatePeriodRequest(BaseModel):
    name: Optional[str] = None
    start_date: Optional[date] = None
    due_date: Optional[date] = None


class AccrueRequest(BaseModel):
    due_type_ids: List[str] = Field(default_factory=list)
    include_empty_units: bool = False
    confirmed: bool = False


# Payment schemas
class RecordPaymentRequest(BaseModel):
    amount: AmountField = Field(..., description="Decimal amount as string")
    paid_at: Optional[datetime] = None
    payment_method: str = Field("cash", description="cash, bank_transfer or other")
    note: Optional[str] = None
    confirmed: bool = False
