"""
Request-scoped pricing cache.

One instance lives for one top-level operation and is cleared when it ends.
"""

from typing import Any, Dict, Optional, Tuple

PricingKey = Tuple[int, int, Optional[int], Optional[int]]


class PricingCache:
    """Memoizes ``(seller, buyer, product, service) -> price_in_cents | None``."""

    # returned by get() for keys never looked up, since None is a cached answer
    MISSING = object()

    def __init__(self):
        self._store: Dict[PricingKey, Optional[int]] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(seller_agency_id: int, buyer_agency_id: int, product_id: Optional[int], service_id: Optional[int]) -> PricingKey:
        return (seller_agency_id, buyer_agency_id, product_id, service_id)

    def contains(self, key: PricingKey) -> bool:
        return key in self._store

    def get(self, key: PricingKey, default: Any = None) -> Any:
        if key not in self._store:
            self.misses += 1
            return default
        self.hits += 1
        return self._store[key]

    def set(self, key: PricingKey, price_in_cents: Optional[int]) -> None:
        # None is cached too: "no agreement" is a valid answer for this operation
        self._store[key] = price_in_cents

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)
