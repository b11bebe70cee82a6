"""
Agency Hierarchy Resolver.

Walks parent-agency links to produce ancestor chains (nearest first),
collects descendants, and resolves inter-agency pricing through a
request-scoped cache. One resolver is created per top-level operation.
"""

import logging
from typing import Dict, List, Optional, Set
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from dispatch_backend.app.core.exceptions import InvalidInputError
from dispatch_backend.app.domain.billing.pricing_resolver import PricingResolver
from dispatch_backend.app.models.agency import Agency
from dispatch_backend.app.services.cache import PricingCache

logger = logging.getLogger(__name__)


class AgencyHierarchyResolver:
    """
    Agency directory and pricing provider for a single operation.

    Usage:
        resolver = AgencyHierarchyResolver(db, PricingCache())
        chain = await resolver.get_ancestors(agency_id)   # [parent, grandparent, ...]
    """

    def __init__(self, db: AsyncSession, cache: Optional[PricingCache] = None):
        self.db = db
        self.cache = cache if cache is not None else PricingCache()
        self._agencies: Dict[int, Optional[Agency]] = {}
        self._ancestors: Dict[int, List[int]] = {}
        self._billing_senders: Dict[tuple, int] = {}

    async def get_agency(self, agency_id: int) -> Optional[Agency]:
        if agency_id not in self._agencies:
            self._agencies[agency_id] = await self.db.get(Agency, agency_id)
        return self._agencies[agency_id]

    async def is_forwarder(self, agency_id: int) -> bool:
        agency = await self.get_agency(agency_id)
        return bool(agency and agency.is_forwarder)

    async def get_ancestors(self, agency_id: int) -> List[int]:
        """
        Return the ancestor chain of an agency, nearest first.

        Index 0 is the parent, index 1 the grandparent, and so on.

        Raises:
            InvalidInputError: if the parent links form a cycle
        """
        if agency_id in self._ancestors:
            return list(self._ancestors[agency_id])

        chain: List[int] = []
        visited: Set[int] = {agency_id}
        current = await self.get_agency(agency_id)

        while current is not None and current.parent_agency_id is not None:
            parent_id = current.parent_agency_id
            if parent_id in visited:
                raise InvalidInputError(
                    f"Agency hierarchy contains a cycle at agency {parent_id}",
                    details={"agency_id": agency_id, "chain": chain + [parent_id]}
                )
            visited.add(parent_id)
            chain.append(parent_id)
            current = await self.get_agency(parent_id)

        self._ancestors[agency_id] = chain
        return list(chain)

    async def get_descendants(self, agency_id: int) -> Set[int]:
        """All agencies below ``agency_id`` (breadth-first, visited-set guarded)."""
        descendants: Set[int] = set()
        frontier = [agency_id]

        while frontier:
            result = await self.db.execute(
                select(Agency.id).where(Agency.parent_agency_id.in_(frontier))
            )
            children = [
                child_id for child_id in result.scalars().all()
                if child_id != agency_id and child_id not in descendants
            ]
            descendants.update(children)
            frontier = children

        return descendants

    async def is_ancestor(self, ancestor_id: int, agency_id: int) -> bool:
        return ancestor_id in await self.get_ancestors(agency_id)

    async def get_pricing_between_agencies(
        self,
        seller_agency_id: int,
        buyer_agency_id: int,
        product_id: Optional[int],
        service_id: Optional[int],
    ) -> Optional[int]:
        return await PricingResolver.get_pricing_between_agencies(
            self.db, self.cache, seller_agency_id, buyer_agency_id, product_id, service_id
        )

    async def resolve_billing_sender(self, holder_agency_id: int, receiver_agency_id: int) -> int:
        """
        Resolve which agency is billed for parcels held by ``holder_agency_id``.

        When the receiver sits two or more levels above the holder, the bill
        goes to the ancestor directly below the receiver; otherwise the holder
        itself is billed.
        """
        key = (holder_agency_id, receiver_agency_id)
        if key in self._billing_senders:
            return self._billing_senders[key]

        chain = await self.get_ancestors(holder_agency_id)
        billing_sender_id = holder_agency_id
        if receiver_agency_id in chain:
            receiver_index = chain.index(receiver_agency_id)
            if receiver_index > 0:
                billing_sender_id = chain[receiver_index - 1]

        self._billing_senders[key] = billing_sender_id
        return billing_sender_id

    def close(self) -> None:
        """Drop every cached value; called when the owning operation ends."""
        logger.debug(
            "Pricing cache closed",
            extra={"hits": self.cache.hits, "misses": self.cache.misses, "entries": len(self.cache)},
        )
        self.cache.clear()
        self._agencies.clear()
        self._ancestors.clear()
        self._billing_senders.clear()
