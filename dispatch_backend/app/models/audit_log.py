"""
Audit Log Database Model.

Tracks dispatch-level actions (creation, finalization, reception, payments,
debt settlement) alongside the per-parcel event history.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from dispatch_backend.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model for dispatch and ledger actions.

    Events logged:
    - DISPATCH_CREATED / DISPATCH_FINALIZED / DISPATCH_DELETED
    - SMART_RECEIVE_COMPLETED / RECEPTION_FINALIZED
    - DISPATCH_PAYMENT_ADDED / DISPATCH_PAYMENT_DELETED
    - DEBT_MARKED_PAID
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(Integer, index=True, nullable=True)
    actor_agency_id = Column(Integer, index=True, nullable=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # Which entity was acted upon
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(Integer, index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    # Timestamp
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', entity={self.entity_type}:{self.entity_id})>"
