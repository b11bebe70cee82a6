"""
Pricing agreement database model.

A negotiated per-unit rate between a seller and a buyer agency for one
product/service pair, distinct from the client-facing retail price.
"""

from sqlalchemy import Column, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from dispatch_backend.app.db.session import Base


class PricingAgreement(Base):
    """Inter-agency pricing agreement, unique per (seller, buyer, product, service)."""
    __tablename__ = "pricing_agreements"
    __table_args__ = (
        UniqueConstraint(
            'seller_agency_id', 'buyer_agency_id', 'product_id', 'service_id',
            name='uq_pricing_agreement_parties_product_service'
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Parties
    seller_agency_id = Column(Integer, ForeignKey('agencies.id'), nullable=False, index=True)
    buyer_agency_id = Column(Integer, ForeignKey('agencies.id'), nullable=False, index=True)

    product_id = Column(Integer, nullable=False)
    service_id = Column(Integer, nullable=False)

    price_in_cents = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return (
            f"<PricingAgreement(seller={self.seller_agency_id}, buyer={self.buyer_agency_id}, "
            f"product={self.product_id}, service={self.service_id}, price={self.price_in_cents})>"
        )
