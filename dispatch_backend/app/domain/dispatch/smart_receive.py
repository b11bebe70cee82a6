"""
Smart Receive.

The receiving agency scans whatever arrived, in any mix, and the service
works out what happened:

1. Each parcel's holder is derived from its dispatch attachment. Parcels
   already at the receiver, or held by agencies the receiver may not
   receive from, are skipped.
2. Parcels travelling in a dispatch are grouped by dispatch. Parcels at
   rest are grouped by billing sender, the agency directly below the
   receiver on the holder's chain.
3. At-rest parcels whose billing sender also sent one of the scanned
   dispatches are surplus and join that dispatch's reception.
4. A fully scanned dispatch becomes RECEIVED. A partially scanned one is
   split: the scanned parcels move to a new RECEIVED dispatch and the
   origin becomes PARTIAL_RECEIVED.
5. Remaining at-rest parcels get one new RECEIVED dispatch per billing sender.
6. Legs that skipped an intermediate agency get an accounting dispatch
   (holder → billing sender) that carries no parcels.
7. PENDING debts of every touched dispatch are cancelled and regenerated.
   A split origin keeps provisional debts for the parcels still in it.

Everything runs in one transaction. Re-scanning the same parcels skips
them all, because their holder is now the receiver.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_backend.app.core.exceptions import InvalidInputError, NotFoundError
from dispatch_backend.app.db.session import transactional
from dispatch_backend.app.domain.billing.cost_calculator import calculate_dispatch_cost, total_weight
from dispatch_backend.app.domain.billing.debt_ledger import DebtDraft, DebtLedger
from dispatch_backend.app.domain.dispatch.loaders import (
    load_members,
    load_parcels_by_tracking,
    lock_dispatch,
    membership_totals,
)
from dispatch_backend.app.domain.dispatch.membership import claim_parcel
from dispatch_backend.app.domain.dispatch.parcel_location import AtRest, holder_agency_id, locate
from dispatch_backend.app.domain.hierarchy.agency_hierarchy import AgencyHierarchyResolver
from dispatch_backend.app.models.dispatch import Dispatch
from dispatch_backend.app.models.dispatch_enums import DispatchStatus
from dispatch_backend.app.models.parcel import Parcel
from dispatch_backend.app.models.parcel_enums import ParcelEventType, ParcelStatus
from dispatch_backend.app.schemas.dispatch import (
    AccountingDispatchInfo,
    OriginDispatchInfo,
    ReceptionDispatchInfo,
    SmartReceiveDetail,
    SmartReceiveResult,
    SmartReceiveSummary,
)
from dispatch_backend.app.services.audit import AuditAction, log_event
from dispatch_backend.app.services.cache import PricingCache
from dispatch_backend.app.services.parcel_history import record_event

logger = logging.getLogger(__name__)

# Dispatches whose assigned receiver is checked against the scanning agency
ASSIGNED_STATUSES = frozenset({
    DispatchStatus.DISPATCHED,
    DispatchStatus.RECEIVING,
    DispatchStatus.PARTIAL_RECEIVED,
})


@dataclass
class _AccountingGroup:
    sender_agency_id: int
    receiver_agency_id: int
    parcels: List[Parcel] = field(default_factory=list)
    origin_dispatch_ids: List[int] = field(default_factory=list)


@dataclass
class _ReceptionUnit:
    dispatch: Dispatch
    parcels: List[Parcel]
    billing_sender_id: int


class _SmartReceiveRun:
    """State of one smart-receive call."""

    def __init__(self, db: AsyncSession, resolver: AgencyHierarchyResolver, ledger: DebtLedger,
                 receiver_agency_id: int, user_id: Optional[int]):
        self.db = db
        self.resolver = resolver
        self.ledger = ledger
        self.receiver_agency_id = receiver_agency_id
        self.user_id = user_id

        self.receiver_is_forwarder = False
        self.received_status = ParcelStatus.RECEIVED_IN_DISPATCH
        self.receiver_children = set()

        self.details: List[SmartReceiveDetail] = []
        self.in_dispatch: Dict[int, List[Parcel]] = {}
        self.dispatches: Dict[int, Dispatch] = {}
        self.without_dispatch: Dict[int, List[Parcel]] = {}
        self.accounting: Dict[Tuple[int, int], _AccountingGroup] = {}

        self.reception_infos: List[ReceptionDispatchInfo] = []
        self.reception_units: List[_ReceptionUnit] = []
        self.accounting_infos: List[AccountingDispatchInfo] = []
        self.accounting_units: List[Tuple[Dispatch, _AccountingGroup]] = []
        self.surplus_count = 0
        self.split_origins: List[Dispatch] = []

    def _skip(self, tracking_number: str, reason: str, action: str = "error",
              dispatch_id: Optional[int] = None) -> None:
        self.details.append(SmartReceiveDetail(
            tracking_number=tracking_number,
            status="skipped",
            action=action,
            dispatch_id=dispatch_id,
            reason=reason,
        ))

    def _received(self, parcel: Parcel, action: str, dispatch_id: int,
                  origin_dispatch_id: Optional[int] = None) -> None:
        self.details.append(SmartReceiveDetail(
            tracking_number=parcel.tracking_number,
            status="received",
            action=action,
            dispatch_id=dispatch_id,
            origin_dispatch_id=origin_dispatch_id,
        ))

    def _add_accounting(self, sender_agency_id: int, receiver_agency_id: int,
                        parcels: List[Parcel], origin_dispatch_id: Optional[int] = None) -> None:
        if sender_agency_id == receiver_agency_id or not parcels:
            return
        group = self.accounting.setdefault(
            (sender_agency_id, receiver_agency_id),
            _AccountingGroup(sender_agency_id, receiver_agency_id),
        )
        group.parcels.extend(parcels)
        if origin_dispatch_id is not None and origin_dispatch_id not in group.origin_dispatch_ids:
            group.origin_dispatch_ids.append(origin_dispatch_id)

    def _event_note(self, text: str) -> str:
        return f"Smart receive: {text}" + (" (arrived at warehouse)" if self.receiver_is_forwarder else "")

    async def execute(self, tracking_numbers: List[str]) -> SmartReceiveResult:
        receiver = await self.resolver.get_agency(self.receiver_agency_id)
        if receiver is None:
            raise NotFoundError("Agency", self.receiver_agency_id)
        self.receiver_is_forwarder = receiver.is_forwarder
        if self.receiver_is_forwarder:
            self.received_status = ParcelStatus.IN_WAREHOUSE
        else:
            self.receiver_children = await self.resolver.get_descendants(self.receiver_agency_id)

        await self._classify(tracking_numbers)
        surplus = self._split_surplus()

        for dispatch_id, scanned in self.in_dispatch.items():
            await self._receive_dispatch(self.dispatches[dispatch_id], scanned, surplus.get(dispatch_id, []))

        for billing_sender_id, parcels in self.without_dispatch.items():
            await self._create_reception_dispatch(billing_sender_id, parcels)

        await self._create_accounting_dispatches()
        drafts = await self._generate_debts()

        received = sum(1 for d in self.details if d.status == "received")
        summary = SmartReceiveSummary(
            total_scanned=len(tracking_numbers),
            total_received=received,
            total_skipped=len(self.details) - received,
            surplus_added=self.surplus_count,
        )
        await log_event(
            self.db, AuditAction.SMART_RECEIVE_COMPLETED, actor_id=self.user_id,
            actor_agency_id=self.receiver_agency_id, entity_type="agency", entity_id=self.receiver_agency_id,
            metadata={
                **summary.model_dump(),
                "reception_dispatches": [i.dispatch_id for i in self.reception_infos],
                "accounting_dispatches": [i.dispatch_id for i in self.accounting_infos],
            },
        )
        return SmartReceiveResult(
            summary=summary,
            reception_dispatches=self.reception_infos,
            accounting_dispatches=self.accounting_infos,
            details=self.details,
            debts_created=[draft.to_summary() for draft in drafts],
            warnings=self.ledger.warnings,
        )

    async def _classify(self, tracking_numbers: List[str]) -> None:
        parcels = {p.tracking_number: p for p in await load_parcels_by_tracking(self.db, tracking_numbers)}
        seen = set()

        for tracking_number in tracking_numbers:
            if tracking_number in seen:
                self._skip(tracking_number, "Duplicate scan")
                continue
            seen.add(tracking_number)

            parcel = parcels.get(tracking_number)
            if parcel is None:
                self._skip(tracking_number, "Parcel not found")
                continue
            if parcel.deleted_at is not None:
                self._skip(tracking_number, "Parcel has been deleted")
                continue

            location = locate(parcel)
            if isinstance(location, AtRest) and location.last_dispatch_id is not None \
                    and parcel.dispatch.receiver_agency_id is None:
                self._skip(
                    tracking_number,
                    f"Parcel's dispatch {location.last_dispatch_id} is "
                    f"{DispatchStatus(parcel.dispatch.status).value} but has no receiver",
                    action="already_processed",
                    dispatch_id=location.last_dispatch_id,
                )
                continue

            holder_id = holder_agency_id(location)
            if holder_id == self.receiver_agency_id:
                self._skip(tracking_number, "Cannot receive parcel - already in your agency")
                continue
            if not self.receiver_is_forwarder and holder_id not in self.receiver_children:
                holder = await self.resolver.get_agency(holder_id)
                self._skip(
                    tracking_number,
                    f'Cannot receive from agency "{holder.name if holder else holder_id}" - not a child agency',
                )
                continue

            if isinstance(location, AtRest):
                billing_sender_id = await self.resolver.resolve_billing_sender(holder_id, self.receiver_agency_id)
                self.without_dispatch.setdefault(billing_sender_id, []).append(parcel)
                self._add_accounting(holder_id, billing_sender_id, [parcel])
                continue

            if location.status == DispatchStatus.CANCELLED:
                self._skip(
                    tracking_number, f"Dispatch {location.dispatch_id} is CANCELLED",
                    dispatch_id=location.dispatch_id,
                )
                continue

            assigned = location.receiver_agency_id
            if location.status in ASSIGNED_STATUSES and assigned and assigned != self.receiver_agency_id:
                if not self.receiver_is_forwarder and not await self.resolver.is_ancestor(
                    self.receiver_agency_id, assigned
                ):
                    self._skip(
                        tracking_number,
                        f"Dispatch {location.dispatch_id} is assigned to agency {assigned}, "
                        f"not {self.receiver_agency_id}",
                        dispatch_id=location.dispatch_id,
                    )
                    continue

            self.in_dispatch.setdefault(location.dispatch_id, []).append(parcel)

        for dispatch_id in self.in_dispatch:
            self.dispatches[dispatch_id] = await lock_dispatch(self.db, dispatch_id)

    def _split_surplus(self) -> Dict[int, List[Parcel]]:
        """Move at-rest groups whose billing sender sent a scanned dispatch into that dispatch."""
        dispatch_by_sender: Dict[int, int] = {}
        for dispatch_id in self.in_dispatch:
            dispatch_by_sender.setdefault(self.dispatches[dispatch_id].sender_agency_id, dispatch_id)

        surplus: Dict[int, List[Parcel]] = {}
        for billing_sender_id in list(self.without_dispatch):
            target = dispatch_by_sender.get(billing_sender_id)
            if target is not None:
                surplus.setdefault(target, []).extend(self.without_dispatch.pop(billing_sender_id))
        return surplus

    async def _move(self, parcel: Parcel, dispatch: Dispatch, notes: str) -> None:
        await claim_parcel(self.db, parcel, dispatch, self.received_status)
        record_event(
            self.db, parcel.id, ParcelEventType.RECEIVED_IN_DISPATCH, self.received_status,
            dispatch_id=dispatch.id, user_id=self.user_id, notes=self._event_note(notes),
        )

    async def _receive_dispatch(self, dispatch: Dispatch, scanned: List[Parcel], surplus: List[Parcel]) -> None:
        billing_sender_id = await self.resolver.resolve_billing_sender(
            dispatch.sender_agency_id, self.receiver_agency_id
        )
        members = await load_members(self.db, dispatch.id)
        parcels = scanned + surplus

        if len(scanned) == len(members):
            for parcel in surplus:
                await self._move(parcel, dispatch, f"Surplus added to dispatch {dispatch.id}")
                self._received(parcel, "surplus_added", dispatch.id)
            for parcel in scanned:
                parcel.status = self.received_status
                record_event(
                    self.db, parcel.id, ParcelEventType.RECEIVED_IN_DISPATCH, self.received_status,
                    dispatch_id=dispatch.id, user_id=self.user_id,
                    notes=self._event_note(f"Received in dispatch {dispatch.id}"),
                )
                self._received(parcel, "received_in_dispatch", dispatch.id)

            cost = await calculate_dispatch_cost(
                self.resolver, parcels, dispatch.sender_agency_id,
                dispatch.receiver_agency_id or self.receiver_agency_id,
            )
            weight = total_weight(parcels)
            dispatch.status = DispatchStatus.RECEIVED
            dispatch.receiver_agency_id = dispatch.receiver_agency_id or self.receiver_agency_id
            dispatch.received_by_id = self.user_id
            dispatch.received_parcels_count = len(parcels)
            dispatch.declared_parcels_count = len(parcels)
            dispatch.declared_weight = weight
            dispatch.weight = weight
            dispatch.cost_in_cents = cost
            dispatch.declared_cost_in_cents = cost

            target = dispatch
            self.reception_infos.append(ReceptionDispatchInfo(
                dispatch_id=dispatch.id,
                sender_agency_id=dispatch.sender_agency_id,
                parcels_count=len(parcels),
                status=DispatchStatus.RECEIVED,
                is_new=False,
                surplus_parcels=len(surplus),
            ))
        else:
            cost = await calculate_dispatch_cost(
                self.resolver, parcels, dispatch.sender_agency_id, self.receiver_agency_id
            )
            weight = total_weight(parcels)
            target = Dispatch(
                sender_agency_id=dispatch.sender_agency_id,
                receiver_agency_id=self.receiver_agency_id,
                created_by_id=self.user_id,
                received_by_id=self.user_id,
                status=DispatchStatus.RECEIVED,
                declared_parcels_count=len(parcels),
                received_parcels_count=len(parcels),
                declared_weight=weight,
                weight=weight,
                cost_in_cents=cost,
                declared_cost_in_cents=cost,
                origin_dispatch_id=dispatch.id,
            )
            self.db.add(target)
            await self.db.flush()

            for parcel in scanned:
                await self._move(
                    parcel, target, f"Extracted from dispatch {dispatch.id} to reception dispatch {target.id}"
                )
                self._received(parcel, "extracted_from_dispatch", target.id, origin_dispatch_id=dispatch.id)
            for parcel in surplus:
                await self._move(parcel, target, f"Surplus added to reception dispatch {target.id}")
                self._received(parcel, "surplus_added", target.id)

            remaining, remaining_weight = await membership_totals(self.db, dispatch.id)
            dispatch.status = DispatchStatus.PARTIAL_RECEIVED
            self.split_origins.append(dispatch)
            dispatch.declared_parcels_count = remaining
            dispatch.declared_weight = remaining_weight
            dispatch.receiver_agency_id = dispatch.receiver_agency_id or self.receiver_agency_id

            self.reception_infos.append(ReceptionDispatchInfo(
                dispatch_id=target.id,
                sender_agency_id=dispatch.sender_agency_id,
                parcels_count=len(parcels),
                status=DispatchStatus.RECEIVED,
                is_new=True,
                surplus_parcels=len(surplus),
                origin_dispatch=OriginDispatchInfo(
                    dispatch_id=dispatch.id,
                    original_parcels_count=len(members),
                    remaining_parcels_count=remaining,
                    new_status=DispatchStatus.PARTIAL_RECEIVED,
                ),
            ))

        self.surplus_count += len(surplus)
        self.reception_units.append(_ReceptionUnit(target, parcels, billing_sender_id))
        if billing_sender_id != dispatch.sender_agency_id:
            self._add_accounting(dispatch.sender_agency_id, billing_sender_id, parcels, target.id)

    async def _create_reception_dispatch(self, billing_sender_id: int, parcels: List[Parcel]) -> None:
        cost = await calculate_dispatch_cost(self.resolver, parcels, billing_sender_id, self.receiver_agency_id)
        weight = total_weight(parcels)
        dispatch = Dispatch(
            sender_agency_id=billing_sender_id,
            receiver_agency_id=self.receiver_agency_id,
            created_by_id=self.user_id,
            received_by_id=self.user_id,
            status=DispatchStatus.RECEIVED,
            declared_parcels_count=len(parcels),
            received_parcels_count=len(parcels),
            declared_weight=weight,
            weight=weight,
            cost_in_cents=cost,
            declared_cost_in_cents=cost,
        )
        self.db.add(dispatch)
        await self.db.flush()

        for parcel in parcels:
            await self._move(parcel, dispatch, f"Created reception dispatch {dispatch.id}")
            self._received(parcel, "received_in_dispatch", dispatch.id)

        self.reception_infos.append(ReceptionDispatchInfo(
            dispatch_id=dispatch.id,
            sender_agency_id=billing_sender_id,
            parcels_count=len(parcels),
            status=DispatchStatus.RECEIVED,
            is_new=True,
        ))
        self.reception_units.append(_ReceptionUnit(dispatch, parcels, billing_sender_id))

    async def _create_accounting_dispatches(self) -> None:
        for group in self.accounting.values():
            linked_id = group.origin_dispatch_ids[0] if group.origin_dispatch_ids else next(
                (info.dispatch_id for info in self.reception_infos
                 if info.sender_agency_id == group.receiver_agency_id),
                None,
            )
            cost = await calculate_dispatch_cost(
                self.resolver, group.parcels, group.sender_agency_id, group.receiver_agency_id
            )
            weight = total_weight(group.parcels)
            dispatch = Dispatch(
                sender_agency_id=group.sender_agency_id,
                receiver_agency_id=group.receiver_agency_id,
                created_by_id=self.user_id,
                received_by_id=self.user_id,
                status=DispatchStatus.RECEIVED,
                declared_parcels_count=len(group.parcels),
                received_parcels_count=len(group.parcels),
                declared_weight=weight,
                weight=weight,
                cost_in_cents=cost,
                declared_cost_in_cents=cost,
                origin_dispatch_id=linked_id,
            )
            self.db.add(dispatch)
            await self.db.flush()

            self.accounting_infos.append(AccountingDispatchInfo(
                dispatch_id=dispatch.id,
                sender_agency_id=group.sender_agency_id,
                receiver_agency_id=group.receiver_agency_id,
                parcels_count=len(group.parcels),
                status=DispatchStatus.RECEIVED,
                origin_dispatch_id=linked_id,
            ))
            self.accounting_units.append((dispatch, group))

    async def _record(self, drafts: List[DebtDraft]) -> None:
        for draft in drafts:
            await self.ledger.record_debts(
                [draft], notes=f"Smart receive: {draft.parcels_count} parcels, {draft.weight_in_lbs:.2f} lbs"
            )

    async def _generate_debts(self) -> List[DebtDraft]:
        dispatch_ids = [unit.dispatch.id for unit in self.reception_units]
        dispatch_ids += [dispatch.id for dispatch, _ in self.accounting_units]
        dispatch_ids += [origin.id for origin in self.split_origins]
        await self.ledger.cancel_pending_debts(
            dispatch_ids, "Cancelled by smart receive: recalculating debts from received parcels"
        )

        drafts: List[DebtDraft] = []
        for origin in self.split_origins:
            remaining = await load_members(self.db, origin.id)
            origin_drafts = await self.ledger.determine_hierarchy_debts(
                remaining, origin.sender_agency_id, origin.receiver_agency_id, origin.id
            )
            await self.ledger.record_debts(
                origin_drafts, notes=f"Provisional debt for parcels remaining in dispatch {origin.id}"
            )
            drafts.extend(origin_drafts)

        for unit in self.reception_units:
            unit_drafts = await self.ledger.generate_dispatch_debts(
                unit.parcels, self.receiver_agency_id, unit.dispatch.id,
                holder_of=lambda parcel, holder=unit.billing_sender_id: holder,
            )
            await self._record(unit_drafts)
            drafts.extend(unit_drafts)

        for dispatch, group in self.accounting_units:
            group_drafts = await self.ledger.generate_dispatch_debts(
                group.parcels, group.receiver_agency_id, dispatch.id,
                holder_of=lambda parcel, holder=group.sender_agency_id: holder,
            )
            await self._record(group_drafts)
            drafts.extend(group_drafts)

        return drafts


class SmartReceiveService:

    @staticmethod
    async def smart_receive(
        db: AsyncSession,
        tracking_numbers: List[str],
        receiver_agency_id: int,
        user_id: Optional[int] = None,
    ) -> SmartReceiveResult:
        """
        Receive a batch of scanned parcels at ``receiver_agency_id``.

        Per-parcel problems are reported as skipped details and never abort
        the batch. The whole reception commits or rolls back as one unit.

        Raises:
            InvalidInputError: empty scan
            NotFoundError: receiver agency missing
        """
        if not tracking_numbers:
            raise InvalidInputError("At least one tracking number is required")

        resolver = AgencyHierarchyResolver(db, PricingCache())
        ledger = DebtLedger(db, resolver)
        try:
            async with transactional(db):
                run = _SmartReceiveRun(db, resolver, ledger, receiver_agency_id, user_id)
                result = await run.execute(tracking_numbers)

            logger.info(
                "Smart receive completed",
                extra={
                    "receiver_agency_id": receiver_agency_id,
                    "received": result.summary.total_received,
                    "skipped": result.summary.total_skipped,
                    "debts": len(result.debts_created),
                }
            )
            return result
        finally:
            resolver.close()
