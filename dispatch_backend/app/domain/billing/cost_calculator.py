"""
Cost Calculator.

Computes what a receiver charges a sender for carrying a set of parcels:
per-item transport at the inter-agency rate plus fees, and the delivery fee
once per distinct order. All money is integer cents; subtotals use ceil.
"""

import logging
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Set

from dispatch_backend.app.models.billing_enums import Unit
from dispatch_backend.app.models.order import OrderItem
from dispatch_backend.app.models.parcel import Parcel

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_weight(value) -> Decimal:
    """Round a weight in pounds to 2 decimal places."""
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def total_weight(parcels: Iterable[Parcel]) -> Decimal:
    return round_weight(sum((to_decimal(p.weight) for p in parcels), Decimal("0")))


def calculate_row_subtotal(
    rate_in_cents: int,
    weight,
    customs_fee_in_cents: int = 0,
    charge_fee_in_cents: int = 0,
    insurance_fee_in_cents: int = 0,
    unit: Unit = Unit.PER_LB,
) -> int:
    """
    Subtotal of one line item in cents.

    PER_LB: ceil(rate × weight + customs + charge + insurance)
    FIXED:  ceil(rate + customs)
    """
    customs = to_decimal(customs_fee_in_cents or 0)
    if unit == Unit.PER_LB:
        amount = (
            to_decimal(rate_in_cents) * to_decimal(weight)
            + customs
            + to_decimal(charge_fee_in_cents or 0)
            + to_decimal(insurance_fee_in_cents or 0)
        )
    else:
        # TODO: confirm with finance whether FIXED items should also carry charge and insurance fees
        amount = to_decimal(rate_in_cents) + customs
    return int(math.ceil(amount))


def delivery_fees_by_order(parcels: Iterable[Parcel]) -> int:
    """Sum each distinct order's delivery fees exactly once."""
    seen_orders: Set[int] = set()
    total = 0
    for parcel in parcels:
        order = parcel.order
        if order is None or order.id in seen_orders:
            continue
        seen_orders.add(order.id)
        total += sum(item.delivery_fee_in_cents or 0 for item in order.items)
    return total


async def resolve_item_rate(resolver, item: OrderItem, sender_agency_id: int, receiver_agency_id: int) -> Optional[int]:
    """
    Rate for one line item: the receiver→sender agreement, else the item's
    own stored agreement, else None.
    """
    rate = await resolver.get_pricing_between_agencies(
        receiver_agency_id, sender_agency_id, item.product_id, item.service_id
    )
    if rate is None and item.pricing_agreement is not None:
        rate = item.pricing_agreement.price_in_cents
    return rate


async def calculate_dispatch_cost(
    resolver,
    parcels: List[Parcel],
    sender_agency_id: int,
    receiver_agency_id: Optional[int],
) -> int:
    """
    Total cost in cents of moving ``parcels`` from sender to receiver.

    Items with no rate at all contribute 0 and are logged; the calculation
    never invents a price and never raises for missing pricing.
    """
    if receiver_agency_id is None:
        return 0

    total = 0
    for parcel in parcels:
        for item in parcel.order_items:
            rate = await resolve_item_rate(resolver, item, sender_agency_id, receiver_agency_id)
            if rate is None:
                logger.warning(
                    "No pricing for order item, using 0",
                    extra={
                        "order_item_id": item.id,
                        "parcel_id": parcel.id,
                        "sender_agency_id": sender_agency_id,
                        "receiver_agency_id": receiver_agency_id,
                    }
                )
                rate = 0
            total += calculate_row_subtotal(
                rate,
                item.weight,
                item.customs_fee_in_cents,
                item.charge_fee_in_cents,
                item.insurance_fee_in_cents,
                item.unit,
            )

    return total + delivery_fees_by_order(parcels)
