"""
Dispatch database model.

A logical container moving parcels from a sender agency to a receiver
agency. ``declared_*`` fields are the sender's view; ``weight``,
``cost_in_cents`` and ``received_parcels_count`` are set at reception.
"""

from sqlalchemy import Column, Integer, Numeric, String, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from dispatch_backend.app.db.session import Base
from dispatch_backend.app.models.dispatch_enums import DispatchStatus, PaymentStatus


class Dispatch(Base):
    """
    Dispatch model.

    Status is derived from membership and reception except DISPATCHED, which
    is set by the explicit finalize action.
    """
    __tablename__ = "dispatches"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    status = Column(Enum(DispatchStatus), default=DispatchStatus.DRAFT, nullable=False, index=True)

    # Parties
    sender_agency_id = Column(Integer, ForeignKey('agencies.id'), nullable=False, index=True)
    receiver_agency_id = Column(Integer, ForeignKey('agencies.id'), nullable=True, index=True)
    created_by_id = Column(Integer, nullable=True)
    received_by_id = Column(Integer, nullable=True)

    # Declared (sender side)
    declared_weight = Column(Numeric(10, 2), nullable=False, default=0)
    declared_parcels_count = Column(Integer, nullable=False, default=0)
    declared_cost_in_cents = Column(Integer, nullable=False, default=0)

    # Actual (reception side)
    weight = Column(Numeric(10, 2), nullable=False, default=0)
    cost_in_cents = Column(Integer, nullable=False, default=0)
    received_parcels_count = Column(Integer, nullable=False, default=0)
    discrepancy_notes = Column(String(1000), nullable=True)

    # Payments
    payment_status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    paid_in_cents = Column(Integer, nullable=False, default=0)

    # Lineage when a dispatch is split during partial reception
    origin_dispatch_id = Column(Integer, ForeignKey('dispatches.id', ondelete="SET NULL"), nullable=True, index=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Dispatch(id={self.id}, status='{self.status}', sender={self.sender_agency_id}, receiver={self.receiver_agency_id})>"
