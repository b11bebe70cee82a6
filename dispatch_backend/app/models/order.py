"""
Order and order line item database models.

Line items carry the billable figures the cost calculator works from:
unit, weight, fees and the item's own stored pricing agreement.
"""

from sqlalchemy import Column, Integer, Numeric, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from dispatch_backend.app.db.session import Base
from dispatch_backend.app.models.billing_enums import Unit


class Order(Base):
    """Customer order placed at an agency."""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    agency_id = Column(Integer, ForeignKey('agencies.id'), nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    items = relationship("OrderItem", foreign_keys="OrderItem.order_id", lazy="selectin")

    def __repr__(self):
        return f"<Order(id={self.id}, agency_id={self.agency_id})>"


class OrderItem(Base):
    """Billable line item, usually tied to one parcel."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    parcel_id = Column(Integer, ForeignKey('parcels.id'), nullable=True, index=True)

    # Rate key
    product_id = Column(Integer, nullable=True)
    service_id = Column(Integer, nullable=True)
    unit = Column(Enum(Unit), default=Unit.PER_LB, nullable=False)
    pricing_agreement_id = Column(Integer, ForeignKey('pricing_agreements.id'), nullable=True)

    weight = Column(Numeric(10, 2), nullable=False, default=0)

    # Money (integer cents)
    price_in_cents = Column(Integer, nullable=False, default=0)
    customs_fee_in_cents = Column(Integer, nullable=False, default=0)
    charge_fee_in_cents = Column(Integer, nullable=False, default=0)
    insurance_fee_in_cents = Column(Integer, nullable=False, default=0)
    delivery_fee_in_cents = Column(Integer, nullable=False, default=0)

    pricing_agreement = relationship("PricingAgreement", lazy="selectin")

    def __repr__(self):
        return f"<OrderItem(id={self.id}, order_id={self.order_id}, parcel_id={self.parcel_id}, unit='{self.unit}')>"
