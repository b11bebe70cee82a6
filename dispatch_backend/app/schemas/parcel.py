"""
Parcel Pydantic schemas.

Read models for parcels listed by the dispatch endpoints.
"""

from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from dispatch_backend.app.models.parcel_enums import ParcelStatus


class ParcelResponse(BaseModel):
    """Schema for parcel response."""
    id: int
    tracking_number: str
    description: Optional[str] = None
    origin_agency_id: int
    dispatch_id: Optional[int] = None
    order_id: Optional[int] = None
    status: ParcelStatus
    weight: Decimal
    created_at: datetime

    class Config:
        from_attributes = True


class ParcelListResponse(BaseModel):
    """Schema for paginated parcel list."""
    parcels: List[ParcelResponse]
    total: int
    page: int
    page_size: int
