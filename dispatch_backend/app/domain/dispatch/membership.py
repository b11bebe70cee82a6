"""
Dispatch Membership Service.

Attaches parcels to and detaches them from dispatches while the sender is
loading. Every operation is one transaction:

- single-parcel attach re-reads parcel and dispatch under lock, then claims
  the parcel with a compare-and-swap on its observed ``dispatch_id``
- create-from-scan claims all eligible parcels with one conditional bulk
  update and reconciles its totals against the rows it actually got
"""

import logging
from typing import List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_backend.app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from dispatch_backend.app.db.session import transactional
from dispatch_backend.app.domain.billing.cost_calculator import round_weight, to_decimal, total_weight
from dispatch_backend.app.domain.dispatch.loaders import (
    count_members_with_status,
    load_parcels_by_tracking,
    lock_dispatch,
    lock_parcel,
    membership_totals,
)
from dispatch_backend.app.domain.dispatch.parcel_location import attach, detach
from dispatch_backend.app.domain.dispatch.state_machine import (
    ALLOWED_PARCEL_STATUSES,
    RECEIVED_PARCEL_STATUSES,
    can_bypass_mutability,
    compute_status,
    ensure_modifiable,
    is_completed,
    is_parcel_status_allowed,
)
from dispatch_backend.app.domain.hierarchy.agency_hierarchy import AgencyHierarchyResolver
from dispatch_backend.app.models.dispatch import Dispatch
from dispatch_backend.app.models.dispatch_enums import DispatchStatus
from dispatch_backend.app.models.parcel import Parcel
from dispatch_backend.app.models.parcel_enums import ParcelEventType, ParcelStatus
from dispatch_backend.app.schemas.dispatch import BatchAddResult, DispatchResponse, ScanOutcome
from dispatch_backend.app.services.audit import AuditAction, log_event
from dispatch_backend.app.services.cache import PricingCache
from dispatch_backend.app.services.parcel_history import find_status_before_dispatch, record_event

logger = logging.getLogger(__name__)

CONCURRENT_CLAIM_REASON = "Concurrently added to another dispatch"


async def claim_parcel(
    db: AsyncSession,
    parcel: Parcel,
    dispatch: Dispatch,
    status: ParcelStatus = ParcelStatus.IN_DISPATCH,
) -> None:
    """
    Attach ``parcel`` to ``dispatch`` only if its dispatch reference is still
    the one observed when it was read.

    Raises:
        ConflictError: if another transaction moved the parcel first
    """
    observed = parcel.dispatch_id
    condition = Parcel.dispatch_id.is_(None) if observed is None else Parcel.dispatch_id == observed
    result = await db.execute(
        update(Parcel)
        .where(Parcel.id == parcel.id, condition)
        .values(dispatch_id=dispatch.id, status=status)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(
            f"Parcel {parcel.tracking_number} was claimed by another dispatch",
            details={"tracking_number": parcel.tracking_number, "dispatch_id": dispatch.id}
        )
    attach(parcel, dispatch, status)


async def _allowed_agencies(resolver: AgencyHierarchyResolver, sender_agency_id: int) -> Set[int]:
    return {sender_agency_id} | await resolver.get_descendants(sender_agency_id)


def _ineligibility_reason(
    parcel: Parcel,
    dispatch_id: Optional[int],
    allowed_agencies: Optional[Set[int]],
) -> Optional[str]:
    """Why a parcel cannot join a dispatch, or None. ``allowed_agencies=None`` skips ownership."""
    if parcel.deleted_at is not None:
        return "Parcel has been deleted"
    if allowed_agencies is not None and parcel.origin_agency_id not in allowed_agencies:
        return "Parcel does not belong to the sender agency or its sub-agencies"
    if not is_parcel_status_allowed(parcel.status):
        return f"Parcel status {ParcelStatus(parcel.status).value} cannot be added to a dispatch"
    if parcel.dispatch_id is not None:
        if dispatch_id is not None and parcel.dispatch_id == dispatch_id:
            return "Parcel is already in this dispatch"
        if parcel.dispatch is None or not is_completed(parcel.dispatch.status):
            return f"Parcel is already in dispatch {parcel.dispatch_id}"
    return None


def _response(dispatch: Dispatch) -> DispatchResponse:
    return DispatchResponse.model_validate(dispatch)


class DispatchMembershipService:
    """Parcel membership of dispatches in DRAFT or LOADING."""

    @staticmethod
    async def add_parcel(
        db: AsyncSession,
        dispatch_id: int,
        tracking_number: str,
        user_id: Optional[int] = None,
        user_role=None,
    ) -> Dispatch:
        """
        Add one parcel to a dispatch.

        Checks run in this order: dispatch exists, dispatch is modifiable,
        parcel exists, parcel not deleted, parcel owned by the sender or a
        sub-agency, parcel status allowed, parcel not in another active dispatch.

        Raises:
            NotFoundError, ForbiddenError, InvalidStateError, ConflictError
        """
        resolver = AgencyHierarchyResolver(db, PricingCache())
        try:
            async with transactional(db):
                dispatch = await lock_dispatch(db, dispatch_id)
                ensure_modifiable(dispatch.status, user_role)

                parcel = await lock_parcel(db, tracking_number)
                if parcel.deleted_at is not None:
                    raise InvalidStateError(
                        f"Parcel {tracking_number} has been deleted",
                        details={"tracking_number": tracking_number}
                    )
                if not can_bypass_mutability(user_role):
                    allowed = await _allowed_agencies(resolver, dispatch.sender_agency_id)
                    if parcel.origin_agency_id not in allowed:
                        raise ForbiddenError(
                            f"Parcel {tracking_number} does not belong to agency "
                            f"{dispatch.sender_agency_id} or its sub-agencies",
                            details={"tracking_number": tracking_number}
                        )
                if not is_parcel_status_allowed(parcel.status):
                    raise InvalidStateError(
                        f"Parcel status {ParcelStatus(parcel.status).value} cannot be added to a dispatch. "
                        f"Allowed: {', '.join(s.value for s in ALLOWED_PARCEL_STATUSES)}",
                        details={"tracking_number": tracking_number, "status": ParcelStatus(parcel.status).value}
                    )
                if parcel.dispatch_id is not None:
                    if parcel.dispatch_id == dispatch.id:
                        raise ConflictError(
                            f"Parcel {tracking_number} is already in this dispatch",
                            details={"dispatch_id": dispatch.id}
                        )
                    current = parcel.dispatch or await db.get(Dispatch, parcel.dispatch_id)
                    if current is not None and not is_completed(current.status):
                        raise ConflictError(
                            f"Parcel {tracking_number} is already in dispatch {parcel.dispatch_id}",
                            details={"dispatch_id": parcel.dispatch_id}
                        )

                await claim_parcel(db, parcel, dispatch)
                record_event(
                    db, parcel.id, ParcelEventType.ADDED_TO_DISPATCH, ParcelStatus.IN_DISPATCH,
                    dispatch_id=dispatch.id, user_id=user_id, notes=f"Added to dispatch {dispatch.id}",
                )

                dispatch.declared_weight = round_weight(
                    to_decimal(dispatch.declared_weight) + to_decimal(parcel.weight)
                )
                dispatch.declared_parcels_count = (dispatch.declared_parcels_count or 0) + 1
                if dispatch.status == DispatchStatus.DRAFT:
                    dispatch.status = DispatchStatus.LOADING

            logger.info(
                "Parcel added to dispatch",
                extra={"dispatch_id": dispatch.id, "tracking_number": tracking_number, "user_id": user_id}
            )
            await db.refresh(dispatch)
            return dispatch
        finally:
            resolver.close()

    @staticmethod
    async def add_parcels_by_order(
        db: AsyncSession,
        dispatch_id: int,
        order_id: int,
        user_id: Optional[int] = None,
        user_role=None,
    ) -> BatchAddResult:
        """
        Add every eligible parcel of an order to a dispatch.

        Ineligible parcels are reported as skipped. Totals are incremented
        once for the whole batch.

        Raises:
            NotFoundError: dispatch missing, or no parcels on the order
            InvalidStateError: dispatch not modifiable
            InvalidInputError: no parcel of the order could be added
        """
        resolver = AgencyHierarchyResolver(db, PricingCache())
        try:
            async with transactional(db):
                dispatch = await lock_dispatch(db, dispatch_id)
                ensure_modifiable(dispatch.status, user_role)

                result = await db.execute(
                    select(Parcel)
                    .where(Parcel.order_id == order_id)
                    .order_by(Parcel.id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                parcels = list(result.scalars().all())
                if not parcels:
                    raise NotFoundError("Order", order_id, f"No parcels found for order {order_id}")

                allowed = None
                if not can_bypass_mutability(user_role):
                    allowed = await _allowed_agencies(resolver, dispatch.sender_agency_id)

                details: List[ScanOutcome] = []
                added: List[Parcel] = []
                for parcel in parcels:
                    reason = _ineligibility_reason(parcel, dispatch.id, allowed)
                    if reason is None:
                        try:
                            await claim_parcel(db, parcel, dispatch)
                        except ConflictError:
                            reason = CONCURRENT_CLAIM_REASON
                    if reason is not None:
                        details.append(ScanOutcome(tracking_number=parcel.tracking_number, status="skipped", reason=reason))
                        continue

                    record_event(
                        db, parcel.id, ParcelEventType.ADDED_TO_DISPATCH, ParcelStatus.IN_DISPATCH,
                        dispatch_id=dispatch.id, user_id=user_id,
                        notes=f"Added to dispatch (batch from order #{order_id})",
                    )
                    added.append(parcel)
                    details.append(ScanOutcome(tracking_number=parcel.tracking_number, status="added"))

                if not added:
                    raise InvalidInputError(
                        f"No parcels from order {order_id} could be added to dispatch {dispatch.id}",
                        details={"details": [d.model_dump() for d in details]}
                    )

                dispatch.declared_weight = round_weight(to_decimal(dispatch.declared_weight) + total_weight(added))
                dispatch.declared_parcels_count = (dispatch.declared_parcels_count or 0) + len(added)
                if dispatch.status == DispatchStatus.DRAFT:
                    dispatch.status = DispatchStatus.LOADING

            logger.info(
                "Order parcels added to dispatch",
                extra={"dispatch_id": dispatch.id, "order_id": order_id, "added": len(added)}
            )
            await db.refresh(dispatch)
            return BatchAddResult(
                dispatch=_response(dispatch),
                added=len(added),
                skipped=len(details) - len(added),
                details=details,
            )
        finally:
            resolver.close()

    @staticmethod
    async def remove_parcel(
        db: AsyncSession,
        tracking_number: str,
        user_id: Optional[int] = None,
        user_role=None,
        dispatch_id: Optional[int] = None,
    ) -> Dispatch:
        """
        Detach a parcel from its dispatch and restore its pre-dispatch status.

        ``dispatch_id``, when given, must match the parcel's dispatch.

        Raises:
            NotFoundError: parcel missing
            InvalidStateError: parcel not in a dispatch (or not in ``dispatch_id``), or dispatch not modifiable
        """
        async with transactional(db):
            parcel = await lock_parcel(db, tracking_number)
            if parcel.dispatch_id is None or (dispatch_id is not None and parcel.dispatch_id != dispatch_id):
                raise InvalidStateError(
                    f"Parcel {tracking_number} is not in "
                    + (f"dispatch {dispatch_id}" if dispatch_id is not None else "any dispatch"),
                    details={"tracking_number": tracking_number}
                )
            dispatch = await lock_dispatch(db, parcel.dispatch_id)
            ensure_modifiable(dispatch.status, user_role)

            restored = await find_status_before_dispatch(db, parcel.id)
            detach(parcel, restored)
            record_event(
                db, parcel.id, ParcelEventType.REMOVED_FROM_DISPATCH, restored,
                dispatch_id=dispatch.id, user_id=user_id,
                notes=f"Removed from dispatch {dispatch.id}, restored to {restored.value}",
            )

            remaining, weight = await membership_totals(db, dispatch.id)
            received = await count_members_with_status(db, dispatch.id, RECEIVED_PARCEL_STATUSES)
            dispatch.declared_parcels_count = remaining
            dispatch.declared_weight = weight
            if remaining == 0:
                dispatch.status = DispatchStatus.DRAFT
            elif dispatch.status in (DispatchStatus.DRAFT, DispatchStatus.LOADING):
                dispatch.status = DispatchStatus.LOADING
            else:
                dispatch.status = compute_status(dispatch.status, remaining, received)

        logger.info(
            "Parcel removed from dispatch",
            extra={"dispatch_id": dispatch.id, "tracking_number": tracking_number, "restored_status": restored.value}
        )
        await db.refresh(dispatch)
        return dispatch

    @staticmethod
    async def create_from_scan(
        db: AsyncSession,
        tracking_numbers: List[str],
        sender_agency_id: int,
        user_id: Optional[int] = None,
    ) -> BatchAddResult:
        """
        Create a LOADING dispatch from a batch of scanned parcels.

        Parcels are classified first, then claimed with a single conditional
        update (``dispatch_id IS NULL AND status IN allowed``). Parcels lost
        to a concurrent transaction are reported as skipped and the dispatch
        totals are recomputed from the parcels actually attached.

        Raises:
            InvalidInputError: empty scan, or no parcel could be added
        """
        if not tracking_numbers:
            raise InvalidInputError("At least one tracking number is required")

        resolver = AgencyHierarchyResolver(db, PricingCache())
        try:
            async with transactional(db):
                details, candidates = await _classify_scan(db, resolver, tracking_numbers, sender_agency_id)
                if not candidates:
                    raise InvalidInputError(
                        "No valid parcels to add to dispatch",
                        details={"details": [d.model_dump() for d in details]}
                    )

                dispatch = Dispatch(
                    sender_agency_id=sender_agency_id,
                    created_by_id=user_id,
                    status=DispatchStatus.LOADING,
                    declared_parcels_count=len(candidates),
                    declared_weight=total_weight(candidates),
                )
                db.add(dispatch)
                await db.flush()

                claim = await db.execute(
                    update(Parcel)
                    .where(
                        Parcel.id.in_([p.id for p in candidates]),
                        Parcel.dispatch_id.is_(None),
                        Parcel.status.in_(list(ALLOWED_PARCEL_STATUSES)),
                        Parcel.deleted_at.is_(None),
                    )
                    .values(dispatch_id=dispatch.id, status=ParcelStatus.IN_DISPATCH)
                    .execution_options(synchronize_session=False)
                )

                result = await db.execute(
                    select(Parcel)
                    .where(Parcel.dispatch_id == dispatch.id)
                    .order_by(Parcel.id)
                    .execution_options(populate_existing=True)
                )
                attached = list(result.scalars().all())
                attached_ids = {p.id for p in attached}

                if claim.rowcount != len(candidates):
                    logger.warning(
                        "Scan lost parcels to concurrent dispatches",
                        extra={
                            "dispatch_id": dispatch.id,
                            "expected": len(candidates),
                            "claimed": claim.rowcount,
                        }
                    )
                    dispatch.declared_parcels_count = len(attached)
                    dispatch.declared_weight = total_weight(attached)
                    dispatch.status = DispatchStatus.LOADING if attached else DispatchStatus.DRAFT
                    lost = {p.tracking_number for p in candidates if p.id not in attached_ids}
                    for detail in details:
                        if detail.tracking_number in lost:
                            detail.status = "skipped"
                            detail.reason = CONCURRENT_CLAIM_REASON

                for parcel in attached:
                    parcel.dispatch = dispatch
                    record_event(
                        db, parcel.id, ParcelEventType.ADDED_TO_DISPATCH, ParcelStatus.IN_DISPATCH,
                        dispatch_id=dispatch.id, user_id=user_id, notes=f"Added to dispatch {dispatch.id}",
                    )

                await log_event(
                    db, AuditAction.DISPATCH_CREATED, actor_id=user_id, actor_agency_id=sender_agency_id,
                    entity_type="dispatch", entity_id=dispatch.id,
                    metadata={"source": "scan", "parcels": len(attached)},
                )

            logger.info(
                "Dispatch created from scan",
                extra={"dispatch_id": dispatch.id, "added": len(attached), "scanned": len(tracking_numbers)}
            )
            await db.refresh(dispatch)
            return BatchAddResult(
                dispatch=_response(dispatch),
                added=len(attached),
                skipped=len(details) - len(attached),
                details=details,
            )
        finally:
            resolver.close()


async def _classify_scan(
    db: AsyncSession,
    resolver: AgencyHierarchyResolver,
    tracking_numbers: List[str],
    sender_agency_id: int,
):
    """
    Provisional classification of scanned parcels.

    Returns the per-tracking-number outcomes and the parcels expected to be
    claimed. Duplicate scans of the same tracking number are skipped.
    """
    parcels = {p.tracking_number: p for p in await load_parcels_by_tracking(db, tracking_numbers)}
    allowed = await _allowed_agencies(resolver, sender_agency_id)

    details: List[ScanOutcome] = []
    candidates: List[Parcel] = []
    seen: Set[str] = set()
    for tracking_number in tracking_numbers:
        if tracking_number in seen:
            details.append(ScanOutcome(tracking_number=tracking_number, status="skipped", reason="Duplicate scan"))
            continue
        seen.add(tracking_number)

        parcel = parcels.get(tracking_number)
        if parcel is None:
            details.append(ScanOutcome(tracking_number=tracking_number, status="skipped", reason="Parcel not found"))
            continue
        reason = _ineligibility_reason(parcel, None, allowed)
        if reason is None and parcel.dispatch_id is not None:
            # The bulk claim only takes unattached parcels
            reason = f"Parcel is already in dispatch {parcel.dispatch_id}"
        if reason is not None:
            details.append(ScanOutcome(tracking_number=tracking_number, status="skipped", reason=reason))
            continue
        candidates.append(parcel)
        details.append(ScanOutcome(tracking_number=tracking_number, status="added"))

    return details, candidates
