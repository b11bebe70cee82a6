"""
Inter-agency debt database model.

One accounting record: ``debtor_agency_id`` owes ``creditor_agency_id``.
Amounts are never updated in place; a recalculation cancels the PENDING
rows and writes new ones.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from dispatch_backend.app.db.session import Base
from dispatch_backend.app.models.billing_enums import DebtStatus


class InterAgencyDebt(Base):
    """Debt between two agencies generated by a dispatch."""
    __tablename__ = "inter_agency_debts"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Parties
    debtor_agency_id = Column(Integer, ForeignKey('agencies.id'), nullable=False, index=True)
    creditor_agency_id = Column(Integer, ForeignKey('agencies.id'), nullable=False, index=True)
    original_sender_agency_id = Column(Integer, ForeignKey('agencies.id'), nullable=True)

    # Source
    dispatch_id = Column(Integer, ForeignKey('dispatches.id', ondelete="SET NULL"), nullable=True, index=True)

    amount_in_cents = Column(Integer, nullable=False)
    relationship = Column(String(50), nullable=False)
    status = Column(Enum(DebtStatus), default=DebtStatus.PENDING, nullable=False, index=True)
    notes = Column(String(1000), nullable=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return (
            f"<InterAgencyDebt(id={self.id}, {self.debtor_agency_id}->{self.creditor_agency_id}, "
            f"amount={self.amount_in_cents}, status='{self.status}')>"
        )
