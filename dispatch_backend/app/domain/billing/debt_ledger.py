"""
Inter-agency debt ledger.

Turns the parcels of a dispatch into InterAgencyDebt rows. Two policies:

- reception debts: each holder group owes the receiver what the receiver
  charges it for carrying those parcels (smart receive)
- hierarchy debts: the origin agency owes every ancestor level up to the
  receiver, with skipped levels made explicit (dispatch finalize and
  reception finalize)

Recalculation never edits amounts: PENDING rows for the dispatch are
cancelled and fresh rows are written.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_backend.app.domain.billing.cost_calculator import (
    calculate_dispatch_cost,
    calculate_row_subtotal,
    resolve_item_rate,
    round_weight,
    to_decimal,
    total_weight,
)
from dispatch_backend.app.models.billing_enums import DebtRelationship, DebtStatus
from dispatch_backend.app.models.inter_agency_debt import InterAgencyDebt
from dispatch_backend.app.models.parcel import Parcel
from dispatch_backend.app.schemas.billing import DebtSummary
from dispatch_backend.app.services.parcel_history import get_dispatch_ids_for_parcel

logger = logging.getLogger(__name__)


@dataclass
class DebtDraft:
    """A debt computed but not yet persisted."""
    debtor_agency_id: int
    creditor_agency_id: int
    amount_in_cents: int
    relationship: str
    original_sender_agency_id: int
    weight_in_lbs: Decimal = Decimal("0")
    parcels_count: int = 0
    dispatch_id: Optional[int] = None

    def to_summary(self) -> DebtSummary:
        return DebtSummary(
            debtor_agency_id=self.debtor_agency_id,
            creditor_agency_id=self.creditor_agency_id,
            amount_in_cents=self.amount_in_cents,
            relationship=self.relationship,
            weight_in_lbs=self.weight_in_lbs,
            parcels_count=self.parcels_count,
            dispatch_id=self.dispatch_id,
        )


@dataclass
class _OriginGroup:
    origin_agency_id: int
    amount_in_cents: int = 0
    parcels_count: int = 0
    weight_in_lbs: Decimal = Decimal("0")
    has_paid_to_sender: bool = False


class DebtLedger:
    """
    Debt generation for one operation.

    ``warnings`` collects the non-fatal problems (missing pricing, receivers
    outside the chain) so callers can surface them in their results.
    """

    def __init__(self, db: AsyncSession, resolver):
        self.db = db
        self.resolver = resolver
        self.warnings: List[str] = []

    def _warn(self, message: str, **extra) -> None:
        self.warnings.append(message)
        logger.warning(message, extra=extra)

    async def generate_dispatch_debts(
        self,
        parcels: Iterable[Parcel],
        receiver_agency_id: int,
        dispatch_id: Optional[int],
        holder_of: Callable[[Parcel], int],
    ) -> List[DebtDraft]:
        """
        One debt per holder group: holder owes receiver the calculated cost.

        Groups held by the receiver itself produce nothing; a zero amount is
        reported as a warning instead of a debt.
        """
        groups: Dict[int, List[Parcel]] = {}
        for parcel in parcels:
            groups.setdefault(holder_of(parcel), []).append(parcel)

        drafts: List[DebtDraft] = []
        for holder_id, group in groups.items():
            if holder_id == receiver_agency_id:
                continue
            amount = await calculate_dispatch_cost(self.resolver, group, holder_id, receiver_agency_id)
            if amount <= 0:
                self._warn(
                    f"Debt from agency {holder_id} to agency {receiver_agency_id} calculated as 0, "
                    f"check pricing agreements",
                    debtor_agency_id=holder_id,
                    creditor_agency_id=receiver_agency_id,
                    dispatch_id=dispatch_id,
                )
                continue
            drafts.append(DebtDraft(
                debtor_agency_id=holder_id,
                creditor_agency_id=receiver_agency_id,
                amount_in_cents=amount,
                relationship=DebtRelationship.DISPATCH_RECEPTION,
                original_sender_agency_id=holder_id,
                weight_in_lbs=total_weight(group),
                parcels_count=len(group),
                dispatch_id=dispatch_id,
            ))
        return drafts

    async def _parcel_cost(self, parcel: Parcel, sender_agency_id: int, receiver_agency_id: int) -> Optional[int]:
        """Cost of a parcel's items under the unit policy, or None when it cannot be priced."""
        if not parcel.order_items:
            return None
        cost = 0
        for item in parcel.order_items:
            rate = await resolve_item_rate(self.resolver, item, sender_agency_id, receiver_agency_id)
            if rate is None:
                return None
            cost += calculate_row_subtotal(rate, item.weight, unit=item.unit)
        return cost

    async def _has_paid_to_agency(self, parcel: Parcel, agency_id: int) -> bool:
        """Whether a PAID debt to ``agency_id`` already covers a dispatch this parcel travelled in."""
        dispatch_ids = await get_dispatch_ids_for_parcel(self.db, parcel.id)
        if parcel.dispatch_id is not None:
            dispatch_ids.add(parcel.dispatch_id)
        if not dispatch_ids:
            return False
        result = await self.db.execute(
            select(InterAgencyDebt.id)
            .where(
                InterAgencyDebt.creditor_agency_id == agency_id,
                InterAgencyDebt.status == DebtStatus.PAID,
                InterAgencyDebt.dispatch_id.in_(dispatch_ids),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def determine_hierarchy_debts(
        self,
        parcels: Iterable[Parcel],
        sender_agency_id: int,
        receiver_agency_id: int,
        dispatch_id: Optional[int],
    ) -> List[DebtDraft]:
        """
        Hierarchy debts for parcels moving from sender to receiver.

        Parcels are grouped by origin agency. A group whose parcels were
        already paid to the sender is billed along the sender's chain
        instead of the origin's. With the receiver at level N of the chain:

        - N = 1: origin owes parent
        - N = 2: origin owes parent (skipped_parent) and grandparent
        - N > 2: origin owes the receiver (ancestor_level_N)
        """
        groups: Dict[int, _OriginGroup] = {}
        for parcel in parcels:
            cost = await self._parcel_cost(parcel, sender_agency_id, receiver_agency_id)
            if cost is None:
                self._warn(
                    f"Parcel {parcel.tracking_number} has no valid pricing, skipped for debts",
                    parcel_id=parcel.id,
                    dispatch_id=dispatch_id,
                )
                continue
            group = groups.setdefault(parcel.origin_agency_id, _OriginGroup(parcel.origin_agency_id))
            group.amount_in_cents += cost
            group.parcels_count += 1
            group.weight_in_lbs = round_weight(group.weight_in_lbs + to_decimal(parcel.weight))
            if not group.has_paid_to_sender and parcel.origin_agency_id != sender_agency_id:
                group.has_paid_to_sender = await self._has_paid_to_agency(parcel, sender_agency_id)

        drafts: List[DebtDraft] = []
        for origin_id, group in groups.items():
            if group.has_paid_to_sender and origin_id != sender_agency_id:
                debtor_id = sender_agency_id
            else:
                if origin_id == sender_agency_id == receiver_agency_id:
                    continue
                debtor_id = origin_id

            chain = await self.resolver.get_ancestors(debtor_id)
            if receiver_agency_id not in chain:
                self._warn(
                    f"Agency {receiver_agency_id} is not an ancestor of agency {debtor_id}, no debt generated",
                    debtor_agency_id=debtor_id,
                    receiver_agency_id=receiver_agency_id,
                    dispatch_id=dispatch_id,
                )
                continue

            level = chain.index(receiver_agency_id) + 1
            common = dict(
                amount_in_cents=group.amount_in_cents,
                original_sender_agency_id=debtor_id,
                weight_in_lbs=group.weight_in_lbs,
                parcels_count=group.parcels_count,
                dispatch_id=dispatch_id,
            )
            if level == 1:
                drafts.append(DebtDraft(debtor_id, chain[0], relationship=DebtRelationship.PARENT, **common))
            elif level == 2:
                drafts.append(DebtDraft(debtor_id, chain[0], relationship=DebtRelationship.SKIPPED_PARENT, **common))
                drafts.append(DebtDraft(debtor_id, chain[1], relationship=DebtRelationship.GRANDPARENT, **common))
            else:
                drafts.append(DebtDraft(
                    debtor_id, receiver_agency_id, relationship=DebtRelationship.ancestor_level(level), **common
                ))

        return drafts

    async def cancel_pending_debts(self, dispatch_ids: Iterable[int], note: str) -> None:
        """Cancel every PENDING debt attached to the given dispatches."""
        ids = [dispatch_id for dispatch_id in dispatch_ids if dispatch_id is not None]
        if not ids:
            return
        await self.db.execute(
            update(InterAgencyDebt)
            .where(
                InterAgencyDebt.dispatch_id.in_(ids),
                InterAgencyDebt.status == DebtStatus.PENDING,
            )
            .values(status=DebtStatus.CANCELLED, notes=note)
        )

    async def record_debts(self, drafts: Iterable[DebtDraft], notes: Optional[str] = None) -> List[InterAgencyDebt]:
        """Persist drafts as PENDING debts in the current transaction."""
        debts = []
        for draft in drafts:
            debt = InterAgencyDebt(
                debtor_agency_id=draft.debtor_agency_id,
                creditor_agency_id=draft.creditor_agency_id,
                original_sender_agency_id=draft.original_sender_agency_id,
                dispatch_id=draft.dispatch_id,
                amount_in_cents=draft.amount_in_cents,
                relationship=draft.relationship,
                status=DebtStatus.PENDING,
                notes=notes,
            )
            self.db.add(debt)
            debts.append(debt)
        if debts:
            await self.db.flush()
        return debts
