"""
Dispatch Pydantic schemas.

Request bodies for the dispatch endpoints and the structured results of
batch, reception and smart-receive operations.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Literal
from dispatch_backend.app.models.dispatch_enums import DispatchStatus, PaymentStatus
from dispatch_backend.app.schemas.billing import DebtSummary
from dispatch_backend.app.schemas.parcel import ParcelResponse


class DispatchResponse(BaseModel):
    """Schema for dispatch response."""
    id: int
    status: DispatchStatus
    sender_agency_id: int
    receiver_agency_id: Optional[int] = None
    created_by_id: Optional[int] = None
    received_by_id: Optional[int] = None
    declared_weight: Decimal
    declared_parcels_count: int
    declared_cost_in_cents: int
    weight: Decimal
    cost_in_cents: int
    received_parcels_count: int
    discrepancy_notes: Optional[str] = None
    payment_status: PaymentStatus
    paid_in_cents: int
    origin_dispatch_id: Optional[int] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DispatchListResponse(BaseModel):
    """Schema for paginated dispatch list."""
    dispatches: List[DispatchResponse]
    total: int
    page: int
    page_size: int


class AddParcelRequest(BaseModel):
    tracking_number: str = Field(..., min_length=1, max_length=100)


class AddParcelsByOrderRequest(BaseModel):
    order_id: int = Field(..., gt=0)


class ScanRequest(BaseModel):
    """Tracking numbers scanned at a counter (create-from-scan and smart receive)."""
    tracking_numbers: List[str] = Field(..., min_length=1)


class FinalizeDispatchRequest(BaseModel):
    receiver_agency_id: int = Field(..., gt=0)


class ScanOutcome(BaseModel):
    """Per-parcel outcome of a batch operation."""
    tracking_number: str
    status: Literal["added", "skipped"]
    reason: Optional[str] = None


class BatchAddResult(BaseModel):
    """Result of adding several parcels to one dispatch."""
    dispatch: DispatchResponse
    added: int
    skipped: int
    details: List[ScanOutcome]


class ReceiveParcelResult(BaseModel):
    dispatch: DispatchResponse
    tracking_number: str
    action: Literal["received", "added_during_reception", "already_received"]


class ReceptionStatusResponse(BaseModel):
    """Reception progress of a dispatch: received, missing and added parcels."""
    dispatch_id: int
    status: DispatchStatus
    total_expected: int
    total_received: int
    total_missing: int
    total_added: int
    received_parcels: List[ParcelResponse]
    missing_parcels: List[ParcelResponse]
    added_parcels: List[ParcelResponse]


class FinalizeReceptionResult(BaseModel):
    dispatch: DispatchResponse
    declared_parcels_count: int
    received_parcels_count: int
    declared_cost_in_cents: int
    actual_cost_in_cents: int
    has_discrepancy: bool
    discrepancy_notes: Optional[str] = None
    debts_created: List[DebtSummary]
    warnings: List[str] = []


class SmartReceiveSummary(BaseModel):
    total_scanned: int
    total_received: int
    total_skipped: int
    surplus_added: int


class OriginDispatchInfo(BaseModel):
    """Effect of a reception on the dispatch the parcels travelled in."""
    dispatch_id: int
    original_parcels_count: int
    remaining_parcels_count: int
    new_status: DispatchStatus


class ReceptionDispatchInfo(BaseModel):
    dispatch_id: int
    sender_agency_id: int
    parcels_count: int
    status: DispatchStatus
    is_new: bool
    surplus_parcels: int = 0
    origin_dispatch: Optional[OriginDispatchInfo] = None


class AccountingDispatchInfo(BaseModel):
    """A RECEIVED dispatch recording a leg that bypassed an intermediate agency."""
    dispatch_id: int
    sender_agency_id: int
    receiver_agency_id: int
    parcels_count: int
    status: DispatchStatus
    origin_dispatch_id: Optional[int] = None


class SmartReceiveDetail(BaseModel):
    tracking_number: str
    status: Literal["received", "skipped"]
    action: Optional[Literal[
        "received_in_dispatch",
        "extracted_from_dispatch",
        "surplus_added",
        "already_processed",
        "error",
    ]] = None
    dispatch_id: Optional[int] = None
    origin_dispatch_id: Optional[int] = None
    reason: Optional[str] = None


class SmartReceiveResult(BaseModel):
    summary: SmartReceiveSummary
    reception_dispatches: List[ReceptionDispatchInfo]
    accounting_dispatches: List[AccountingDispatchInfo]
    details: List[SmartReceiveDetail]
    debts_created: List[DebtSummary]
    warnings: List[str] = []
