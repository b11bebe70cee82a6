"""
Dispatch reception, one scan at a time.

The receiving agency scans parcels against a DISPATCHED dispatch, checks
progress, then finalizes: actual totals are computed from what arrived,
discrepancies are recorded, and the debt ledger is recomputed.
"""

import logging
from typing import Dict, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_backend.app.core.exceptions import ConflictError, InvalidStateError, NotFoundError
from dispatch_backend.app.db.session import transactional
from dispatch_backend.app.domain.billing.cost_calculator import calculate_dispatch_cost, total_weight
from dispatch_backend.app.domain.billing.debt_ledger import DebtLedger
from dispatch_backend.app.domain.dispatch.loaders import load_members, lock_dispatch, lock_parcel
from dispatch_backend.app.domain.dispatch.membership import claim_parcel
from dispatch_backend.app.domain.dispatch.state_machine import (
    IN_TRANSIT_STATUSES,
    RECEIVED_PARCEL_STATUSES,
    RECEPTION_STATUSES,
    compute_status,
    is_completed,
)
from dispatch_backend.app.domain.hierarchy.agency_hierarchy import AgencyHierarchyResolver
from dispatch_backend.app.models.dispatch import Dispatch
from dispatch_backend.app.models.dispatch_enums import DispatchStatus
from dispatch_backend.app.models.parcel_enums import ParcelEventType, ParcelStatus
from dispatch_backend.app.models.parcel_event import ParcelEvent
from dispatch_backend.app.schemas.dispatch import (
    DispatchResponse,
    FinalizeReceptionResult,
    ReceiveParcelResult,
    ReceptionStatusResponse,
)
from dispatch_backend.app.schemas.parcel import ParcelResponse
from dispatch_backend.app.services.audit import AuditAction, log_event
from dispatch_backend.app.services.cache import PricingCache
from dispatch_backend.app.services.parcel_history import record_event

logger = logging.getLogger(__name__)


def _format_cents(cents: int) -> str:
    return f"${cents / 100:.2f}"


class DispatchReceptionService:

    @staticmethod
    async def receive_parcel(
        db: AsyncSession,
        dispatch_id: int,
        tracking_number: str,
        user_id: Optional[int] = None,
    ) -> ReceiveParcelResult:
        """
        Scan one parcel at reception.

        A member parcel is marked received; an unattached parcel is pulled
        into the dispatch as received. Scanning an already received parcel
        changes nothing.

        Raises:
            NotFoundError: dispatch or parcel missing
            InvalidStateError: dispatch not DISPATCHED/RECEIVING, or parcel deleted
            ConflictError: parcel travels in another active dispatch
        """
        async with transactional(db):
            dispatch = await lock_dispatch(db, dispatch_id)
            if dispatch.status not in IN_TRANSIT_STATUSES:
                raise InvalidStateError(
                    f"Dispatch {dispatch.id} is {DispatchStatus(dispatch.status).value}; "
                    f"only DISPATCHED or RECEIVING dispatches can receive parcels",
                    details={"status": DispatchStatus(dispatch.status).value}
                )

            parcel = await lock_parcel(db, tracking_number)
            if parcel.dispatch_id == dispatch.id:
                if parcel.status in RECEIVED_PARCEL_STATUSES:
                    action = "already_received"
                else:
                    parcel.status = ParcelStatus.RECEIVED_IN_DISPATCH
                    record_event(
                        db, parcel.id, ParcelEventType.RECEIVED_IN_DISPATCH, ParcelStatus.RECEIVED_IN_DISPATCH,
                        dispatch_id=dispatch.id, user_id=user_id, notes=f"Received in dispatch {dispatch.id}",
                    )
                    action = "received"
            elif parcel.dispatch_id is None or (parcel.dispatch is not None and is_completed(parcel.dispatch.status)):
                if parcel.deleted_at is not None:
                    raise InvalidStateError(f"Parcel {tracking_number} has been deleted")
                await claim_parcel(db, parcel, dispatch, ParcelStatus.RECEIVED_IN_DISPATCH)
                record_event(
                    db, parcel.id, ParcelEventType.RECEIVED_IN_DISPATCH, ParcelStatus.RECEIVED_IN_DISPATCH,
                    dispatch_id=dispatch.id, user_id=user_id, notes="Added during reception",
                )
                action = "added_during_reception"
            else:
                raise ConflictError(
                    f"Parcel {tracking_number} belongs to dispatch {parcel.dispatch_id}",
                    details={"dispatch_id": parcel.dispatch_id}
                )

            members = await load_members(db, dispatch.id)
            received_parcels = [p for p in members if p.status in RECEIVED_PARCEL_STATUSES]
            dispatch.received_parcels_count = len(received_parcels)
            dispatch.weight = total_weight(received_parcels)
            dispatch.received_by_id = user_id
            dispatch.status = compute_status(dispatch.status, len(members), len(received_parcels))

        logger.info(
            "Parcel scanned at reception",
            extra={"dispatch_id": dispatch.id, "tracking_number": tracking_number, "action": action}
        )
        await db.refresh(dispatch)
        return ReceiveParcelResult(
            dispatch=DispatchResponse.model_validate(dispatch),
            tracking_number=tracking_number,
            action=action,
        )

    @staticmethod
    async def get_reception_status(db: AsyncSession, dispatch_id: int) -> ReceptionStatusResponse:
        """
        Reception progress. A parcel counts as added when it was received
        into this dispatch without ever having been loaded into it.
        """
        dispatch = await db.get(Dispatch, dispatch_id)
        if dispatch is None:
            raise NotFoundError("Dispatch", dispatch_id)

        members = await load_members(db, dispatch_id)
        result = await db.execute(
            select(ParcelEvent.parcel_id, ParcelEvent.event_type)
            .where(
                ParcelEvent.dispatch_id == dispatch_id,
                ParcelEvent.event_type.in_([ParcelEventType.ADDED_TO_DISPATCH, ParcelEventType.RECEIVED_IN_DISPATCH]),
            )
        )
        events: Dict[int, Set[ParcelEventType]] = {}
        for parcel_id, event_type in result.all():
            events.setdefault(parcel_id, set()).add(event_type)

        received, missing, added = [], [], []
        for parcel in members:
            kinds = events.get(parcel.id, set())
            if ParcelEventType.RECEIVED_IN_DISPATCH in kinds and ParcelEventType.ADDED_TO_DISPATCH not in kinds:
                added.append(parcel)
            elif parcel.status in RECEIVED_PARCEL_STATUSES:
                received.append(parcel)
            else:
                missing.append(parcel)

        def as_response(parcels) -> List[ParcelResponse]:
            return [ParcelResponse.model_validate(p) for p in parcels]

        return ReceptionStatusResponse(
            dispatch_id=dispatch.id,
            status=dispatch.status,
            total_expected=len(received) + len(missing),
            total_received=len(received),
            total_missing=len(missing),
            total_added=len(added),
            received_parcels=as_response(received),
            missing_parcels=as_response(missing),
            added_parcels=as_response(added),
        )

    @staticmethod
    async def finalize_reception(
        db: AsyncSession,
        dispatch_id: int,
        user_id: Optional[int] = None,
    ) -> FinalizeReceptionResult:
        """
        Close reception of a dispatch.

        Flow:
        1. Compute actual count, weight and cost from the received parcels
        2. Compare with the declared values; record a discrepancy note
        3. Cancel PENDING debts and regenerate them from what was received
        4. Mark RECEIVED or DISCREPANCY

        Raises:
            NotFoundError: dispatch missing
            InvalidStateError: wrong status or no receiver assigned
        """
        resolver = AgencyHierarchyResolver(db, PricingCache())
        ledger = DebtLedger(db, resolver)
        try:
            async with transactional(db):
                dispatch = await lock_dispatch(db, dispatch_id)
                if dispatch.status not in RECEPTION_STATUSES:
                    raise InvalidStateError(
                        f"Cannot finalize reception of dispatch with status {DispatchStatus(dispatch.status).value}",
                        details={"status": DispatchStatus(dispatch.status).value}
                    )
                if dispatch.receiver_agency_id is None:
                    raise InvalidStateError(f"Dispatch {dispatch.id} has no receiver agency assigned")

                received = [p for p in await load_members(db, dispatch.id) if p.status in RECEIVED_PARCEL_STATUSES]
                actual_cost = await calculate_dispatch_cost(
                    resolver, received, dispatch.sender_agency_id, dispatch.receiver_agency_id
                )
                declared_count = dispatch.declared_parcels_count or 0
                declared_cost = dispatch.declared_cost_in_cents or 0

                notes = []
                if len(received) != declared_count:
                    notes.append(
                        f"Declared parcels: {declared_count}, received: {len(received)} "
                        f"({len(received) - declared_count:+d})"
                    )
                if actual_cost != declared_cost:
                    notes.append(
                        f"Declared cost: {_format_cents(declared_cost)}, actual: {_format_cents(actual_cost)} "
                        f"({actual_cost - declared_cost:+d} cents)"
                    )
                has_discrepancy = bool(notes)

                await ledger.cancel_pending_debts(
                    [dispatch.id], f"Replaced by reception finalization of dispatch {dispatch.id}"
                )
                drafts = await ledger.determine_hierarchy_debts(
                    received, dispatch.sender_agency_id, dispatch.receiver_agency_id, dispatch.id
                )
                await ledger.record_debts(drafts, notes=f"Final debt based on actual reception of dispatch {dispatch.id}")

                dispatch.cost_in_cents = actual_cost
                dispatch.weight = total_weight(received)
                dispatch.received_parcels_count = len(received)
                dispatch.received_by_id = user_id
                dispatch.discrepancy_notes = "; ".join(notes) if notes else None
                dispatch.status = DispatchStatus.DISCREPANCY if has_discrepancy else DispatchStatus.RECEIVED

                await log_event(
                    db, AuditAction.RECEPTION_FINALIZED, actor_id=user_id,
                    actor_agency_id=dispatch.receiver_agency_id,
                    entity_type="dispatch", entity_id=dispatch.id,
                    metadata={"has_discrepancy": has_discrepancy, "actual_cost_in_cents": actual_cost},
                )

            if has_discrepancy:
                logger.warning(
                    "Dispatch received with discrepancy",
                    extra={"dispatch_id": dispatch.id, "discrepancy": dispatch.discrepancy_notes}
                )
            else:
                logger.info("Dispatch reception finalized", extra={"dispatch_id": dispatch.id})

            await db.refresh(dispatch)
            return FinalizeReceptionResult(
                dispatch=DispatchResponse.model_validate(dispatch),
                declared_parcels_count=declared_count,
                received_parcels_count=len(received),
                declared_cost_in_cents=declared_cost,
                actual_cost_in_cents=actual_cost,
                has_discrepancy=has_discrepancy,
                discrepancy_notes=dispatch.discrepancy_notes,
                debts_created=[draft.to_summary() for draft in drafts],
                warnings=ledger.warnings,
            )
        finally:
            resolver.close()
