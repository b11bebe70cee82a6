"""
Parcel event database model.

Append-only history: created, never mutated or deleted. It is the source of
truth for the status a parcel had before it entered a dispatch.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from dispatch_backend.app.db.session import Base
from dispatch_backend.app.models.parcel_enums import ParcelStatus, ParcelEventType


class ParcelEvent(Base):
    """Parcel history entry (no updated_at: immutable)."""
    __tablename__ = "parcel_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    parcel_id = Column(Integer, ForeignKey('parcels.id'), nullable=False, index=True)

    event_type = Column(Enum(ParcelEventType), nullable=False, index=True)
    status = Column(Enum(ParcelStatus), nullable=False)
    dispatch_id = Column(Integer, ForeignKey('dispatches.id', ondelete="SET NULL"), nullable=True, index=True)

    user_id = Column(Integer, nullable=True)
    notes = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<ParcelEvent(id={self.id}, parcel_id={self.parcel_id}, type='{self.event_type}', status='{self.status}')>"
