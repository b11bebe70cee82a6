"""
Parcel database model.

A parcel rests at an agency (``dispatch_id`` is NULL) or belongs to exactly
one dispatch. Parcels are never deleted by the dispatch engine, only
restored to a prior status.
"""

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from dispatch_backend.app.db.session import Base
from dispatch_backend.app.models.parcel_enums import ParcelStatus


class Parcel(Base):
    """
    Parcel model (identified by its HBL tracking number).

    ``origin_agency_id`` is the agency that created the parcel; the holder
    agency is derived from the dispatch attachment, never stored.
    """
    __tablename__ = "parcels"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tracking_number = Column(String(100), unique=True, nullable=False, index=True)
    description = Column(String(500), nullable=True)

    # Ownership and location
    origin_agency_id = Column(Integer, ForeignKey('agencies.id'), nullable=False, index=True)
    dispatch_id = Column(Integer, ForeignKey('dispatches.id', ondelete="SET NULL"), nullable=True, index=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=True, index=True)

    status = Column(Enum(ParcelStatus), default=ParcelStatus.IN_AGENCY, nullable=False, index=True)
    weight = Column(Numeric(10, 2), nullable=False, default=0)

    # Soft delete
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    dispatch = relationship("Dispatch", foreign_keys=[dispatch_id], lazy="selectin")
    order = relationship("Order", foreign_keys=[order_id], lazy="selectin")
    order_items = relationship("OrderItem", foreign_keys="OrderItem.parcel_id", lazy="selectin")

    def __repr__(self):
        return f"<Parcel(id={self.id}, hbl='{self.tracking_number}', dispatch_id={self.dispatch_id}, status='{self.status}')>"
