"""
Pricing Agreement Resolver.

Responsible for finding the negotiated rate between two agencies for a
product/service pair. Lookups go through the caller's request-scoped
PricingCache.
"""

from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from dispatch_backend.app.models.pricing_agreement import PricingAgreement
from dispatch_backend.app.services.cache import PricingCache


class PricingResolver:

    @staticmethod
    async def get_pricing_between_agencies(
        db: AsyncSession,
        cache: PricingCache,
        seller_agency_id: int,
        buyer_agency_id: int,
        product_id: Optional[int],
        service_id: Optional[int],
    ) -> Optional[int]:
        """
        Find the agreed price in cents, or None when no agreement exists.

        The seller is the agency providing the transport leg (the receiver of a
        dispatch) and the buyer is the agency paying for it (the sender).
        """
        if product_id is None or service_id is None:
            return None

        key = PricingCache.key(seller_agency_id, buyer_agency_id, product_id, service_id)
        cached = cache.get(key, PricingCache.MISSING)
        if cached is not PricingCache.MISSING:
            return cached

        query = select(PricingAgreement.price_in_cents).where(
            PricingAgreement.seller_agency_id == seller_agency_id,
            PricingAgreement.buyer_agency_id == buyer_agency_id,
            PricingAgreement.product_id == product_id,
            PricingAgreement.service_id == service_id,
        )
        result = await db.execute(query)
        price = result.scalar_one_or_none()

        cache.set(key, price)
        return price
