"""
Billing Pydantic schemas.

Dispatch payments and inter-agency debts.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from dispatch_backend.app.models.billing_enums import DebtStatus
from dispatch_backend.app.models.dispatch_enums import PaymentMethod


class PaymentCreate(BaseModel):
    """Schema for adding a payment to a dispatch. Card charges are computed server-side."""
    amount_in_cents: int = Field(..., gt=0, description="Amount applied against the dispatch cost")
    method: PaymentMethod
    reference: Optional[str] = Field(None, max_length=200)
    date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)


class PaymentResponse(BaseModel):
    """Schema for dispatch payment response."""
    id: int
    dispatch_id: int
    amount_in_cents: int
    charge_in_cents: int
    method: PaymentMethod
    reference: Optional[str] = None
    notes: Optional[str] = None
    paid_by_id: Optional[int] = None
    date: datetime

    class Config:
        from_attributes = True


class DebtResponse(BaseModel):
    """Schema for inter-agency debt response."""
    id: int
    debtor_agency_id: int
    creditor_agency_id: int
    original_sender_agency_id: Optional[int] = None
    dispatch_id: Optional[int] = None
    amount_in_cents: int
    relationship: str
    status: DebtStatus
    notes: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class DebtListResponse(BaseModel):
    """Debts plus the PENDING total among them."""
    debts: List[DebtResponse]
    total_pending_in_cents: int


class DebtSummary(BaseModel):
    """A debt produced by a ledger run."""
    debtor_agency_id: int
    creditor_agency_id: int
    amount_in_cents: int
    relationship: str
    weight_in_lbs: Decimal = Decimal("0")
    parcels_count: int = 0
    dispatch_id: Optional[int] = None
