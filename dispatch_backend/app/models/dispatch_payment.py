"""
Dispatch payment database model.

Payments applied against a dispatch's ``cost_in_cents``. The card
processing charge is computed by the billing service, never user-supplied.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from dispatch_backend.app.db.session import Base
from dispatch_backend.app.models.dispatch_enums import PaymentMethod


class DispatchPayment(Base):
    """Payment against a RECEIVED dispatch."""
    __tablename__ = "dispatch_payments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    dispatch_id = Column(Integer, ForeignKey('dispatches.id', ondelete="CASCADE"), nullable=False, index=True)

    amount_in_cents = Column(Integer, nullable=False)
    charge_in_cents = Column(Integer, nullable=False, default=0)
    method = Column(Enum(PaymentMethod), nullable=False)
    reference = Column(String(200), nullable=True)
    notes = Column(String(500), nullable=True)
    paid_by_id = Column(Integer, nullable=True)

    date = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<DispatchPayment(id={self.id}, dispatch_id={self.dispatch_id}, amount={self.amount_in_cents}, method='{self.method}')>"
