"""
Dispatch Service (Domain Logic).

Lifecycle of a dispatch on the sender side: creation, finalization towards
a receiver (with the provisional debt ledger), deletion, and read queries.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_backend.app.core.exceptions import (
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from dispatch_backend.app.core.guards import is_elevated
from dispatch_backend.app.db.session import transactional
from dispatch_backend.app.domain.billing.cost_calculator import calculate_dispatch_cost
from dispatch_backend.app.domain.billing.debt_ledger import DebtLedger
from dispatch_backend.app.domain.dispatch.loaders import load_members, lock_dispatch
from dispatch_backend.app.domain.dispatch.parcel_location import detach
from dispatch_backend.app.domain.dispatch.state_machine import (
    ALLOWED_PARCEL_STATUSES,
    DELETABLE_STATUSES,
    MODIFIABLE_STATUSES,
    can_bypass_mutability,
)
from dispatch_backend.app.domain.hierarchy.agency_hierarchy import AgencyHierarchyResolver
from dispatch_backend.app.models.agency import Agency
from dispatch_backend.app.models.dispatch import Dispatch
from dispatch_backend.app.models.dispatch_enums import DispatchStatus
from dispatch_backend.app.models.parcel import Parcel
from dispatch_backend.app.models.parcel_enums import ParcelEventType
from dispatch_backend.app.services.audit import AuditAction, log_event
from dispatch_backend.app.services.cache import PricingCache
from dispatch_backend.app.services.parcel_history import find_status_before_dispatch, record_event

logger = logging.getLogger(__name__)


class DispatchService:

    @staticmethod
    async def create_dispatch(db: AsyncSession, sender_agency_id: int, user_id: Optional[int] = None) -> Dispatch:
        """Create an empty DRAFT dispatch for the sender agency."""
        async with transactional(db):
            agency = await db.get(Agency, sender_agency_id)
            if agency is None:
                raise NotFoundError("Agency", sender_agency_id)

            dispatch = Dispatch(
                sender_agency_id=sender_agency_id,
                created_by_id=user_id,
                status=DispatchStatus.DRAFT,
            )
            db.add(dispatch)
            await db.flush()
            await log_event(
                db, AuditAction.DISPATCH_CREATED, actor_id=user_id, actor_agency_id=sender_agency_id,
                entity_type="dispatch", entity_id=dispatch.id,
            )

        logger.info("Dispatch created", extra={"dispatch_id": dispatch.id, "sender_agency_id": sender_agency_id})
        await db.refresh(dispatch)
        return dispatch

    @staticmethod
    async def finalize_dispatch(
        db: AsyncSession,
        dispatch_id: int,
        receiver_agency_id: int,
        sender_agency_id: Optional[int],
        user_id: Optional[int] = None,
        user_role=None,
    ) -> Dispatch:
        """
        Finalize a loaded dispatch towards a receiver agency.

        Flow:
        1. Validate receiver (not the sender, exists, forwarder or ancestor)
        2. Validate dispatch (owned by sender, DRAFT/LOADING, not empty)
        3. Compute declared cost from the member parcels
        4. Mark DISPATCHED
        5. Replace the provisional hierarchy debts

        Raises:
            InvalidInputError: sender and receiver are the same agency
            NotFoundError: dispatch or receiver missing
            ForbiddenError: receiver not allowed, or dispatch of another agency
            InvalidStateError: dispatch not loadable or empty
        """
        if sender_agency_id is not None and sender_agency_id == receiver_agency_id:
            raise InvalidInputError("Cannot dispatch to your own agency")

        resolver = AgencyHierarchyResolver(db, PricingCache())
        ledger = DebtLedger(db, resolver)
        try:
            async with transactional(db):
                receiver = await resolver.get_agency(receiver_agency_id)
                if receiver is None:
                    raise NotFoundError("Agency", receiver_agency_id)

                dispatch = await lock_dispatch(db, dispatch_id)
                if not is_elevated(user_role) and dispatch.sender_agency_id != sender_agency_id:
                    raise ForbiddenError("Only the sender agency can finalize this dispatch")
                if dispatch.sender_agency_id == receiver_agency_id:
                    raise InvalidInputError("Cannot dispatch to your own agency")

                if not receiver.is_forwarder and not await resolver.is_ancestor(
                    receiver_agency_id, dispatch.sender_agency_id
                ):
                    raise ForbiddenError(
                        f"Agency {receiver_agency_id} is not a parent agency of {dispatch.sender_agency_id}. "
                        f"Dispatches can only be sent up the hierarchy or to a forwarder.",
                        details={"receiver_agency_id": receiver_agency_id}
                    )

                if dispatch.status not in MODIFIABLE_STATUSES:
                    raise InvalidStateError(
                        f"Dispatch {dispatch.id} is {DispatchStatus(dispatch.status).value} and cannot be finalized",
                        details={"status": DispatchStatus(dispatch.status).value}
                    )

                parcels = await load_members(db, dispatch.id)
                if not parcels:
                    raise InvalidStateError(f"Dispatch {dispatch.id} has no parcels")

                dispatch.declared_cost_in_cents = await calculate_dispatch_cost(
                    resolver, parcels, dispatch.sender_agency_id, receiver_agency_id
                )
                dispatch.receiver_agency_id = receiver_agency_id
                dispatch.status = DispatchStatus.DISPATCHED

                await ledger.cancel_pending_debts(
                    [dispatch.id], f"Replaced by finalization of dispatch {dispatch.id}"
                )
                drafts = await ledger.determine_hierarchy_debts(
                    parcels, dispatch.sender_agency_id, receiver_agency_id, dispatch.id
                )
                await ledger.record_debts(drafts, notes=f"Provisional debt at finalization of dispatch {dispatch.id}")

                await log_event(
                    db, AuditAction.DISPATCH_FINALIZED, actor_id=user_id, actor_agency_id=sender_agency_id,
                    entity_type="dispatch", entity_id=dispatch.id,
                    metadata={
                        "receiver_agency_id": receiver_agency_id,
                        "declared_cost_in_cents": dispatch.declared_cost_in_cents,
                        "debts": len(drafts),
                        "warnings": ledger.warnings,
                    },
                )

            logger.info(
                "Dispatch finalized",
                extra={
                    "dispatch_id": dispatch.id,
                    "receiver_agency_id": receiver_agency_id,
                    "declared_cost_in_cents": dispatch.declared_cost_in_cents,
                }
            )
            await db.refresh(dispatch)
            return dispatch
        finally:
            resolver.close()

    @staticmethod
    async def delete_dispatch(
        db: AsyncSession,
        dispatch_id: int,
        user_agency_id: Optional[int],
        user_id: Optional[int] = None,
        user_role=None,
    ) -> None:
        """
        Delete a dispatch, restoring every member parcel from its history.

        Raises:
            NotFoundError: dispatch missing
            ForbiddenError: caller is not the sender agency (unless elevated)
            InvalidStateError: status is not DRAFT/CANCELLED (unless ROOT)
        """
        resolver = AgencyHierarchyResolver(db, PricingCache())
        ledger = DebtLedger(db, resolver)
        try:
            async with transactional(db):
                dispatch = await lock_dispatch(db, dispatch_id)
                if not is_elevated(user_role) and dispatch.sender_agency_id != user_agency_id:
                    raise ForbiddenError("Only the sender agency can delete this dispatch")
                if dispatch.status not in DELETABLE_STATUSES and not can_bypass_mutability(user_role):
                    raise InvalidStateError(
                        f"Cannot delete dispatch with status {DispatchStatus(dispatch.status).value}. "
                        f"Only DRAFT or CANCELLED dispatches can be deleted.",
                        details={"status": DispatchStatus(dispatch.status).value}
                    )

                await ledger.cancel_pending_debts([dispatch.id], f"Dispatch {dispatch.id} deleted")

                parcels = await load_members(db, dispatch.id)
                for parcel in parcels:
                    restored = await find_status_before_dispatch(db, parcel.id)
                    detach(parcel, restored)
                    record_event(
                        db, parcel.id, ParcelEventType.REMOVED_FROM_DISPATCH, restored,
                        dispatch_id=dispatch.id, user_id=user_id,
                        notes=f"Dispatch {dispatch.id} deleted, restored to {restored.value}",
                    )
                await db.flush()

                await log_event(
                    db, AuditAction.DISPATCH_DELETED, actor_id=user_id, actor_agency_id=user_agency_id,
                    entity_type="dispatch", entity_id=dispatch.id,
                    metadata={"status": DispatchStatus(dispatch.status).value, "parcels_restored": len(parcels)},
                )
                await db.delete(dispatch)

            logger.info(
                "Dispatch deleted",
                extra={"dispatch_id": dispatch_id, "parcels_restored": len(parcels)}
            )
        finally:
            resolver.close()

    @staticmethod
    async def get_dispatch(db: AsyncSession, dispatch_id: int) -> Dispatch:
        dispatch = await db.get(Dispatch, dispatch_id)
        if dispatch is None:
            raise NotFoundError("Dispatch", dispatch_id)
        return dispatch

    @staticmethod
    async def list_dispatches(
        db: AsyncSession,
        agency_id: Optional[int] = None,
        status: Optional[DispatchStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Dispatch], int]:
        """Dispatches sent or received by ``agency_id`` (all when None), newest first."""
        query = select(Dispatch)
        count_query = select(func.count(Dispatch.id))
        if agency_id is not None:
            involved = or_(Dispatch.sender_agency_id == agency_id, Dispatch.receiver_agency_id == agency_id)
            query = query.where(involved)
            count_query = count_query.where(involved)
        if status is not None:
            query = query.where(Dispatch.status == status)
            count_query = count_query.where(Dispatch.status == status)

        total = (await db.execute(count_query)).scalar_one()
        result = await db.execute(
            query.order_by(Dispatch.id.desc()).offset((page - 1) * limit).limit(limit)
        )
        return list(result.scalars().all()), total

    @staticmethod
    async def get_dispatch_parcels(
        db: AsyncSession,
        dispatch_id: int,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Parcel], int]:
        await DispatchService.get_dispatch(db, dispatch_id)
        total = (await db.execute(
            select(func.count(Parcel.id)).where(Parcel.dispatch_id == dispatch_id)
        )).scalar_one()
        result = await db.execute(
            select(Parcel)
            .where(Parcel.dispatch_id == dispatch_id)
            .order_by(Parcel.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    @staticmethod
    async def get_ready_for_dispatch(
        db: AsyncSession,
        agency_id: int,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Parcel], int]:
        """Parcels resting at the agency that may be added to a dispatch."""
        conditions = (
            Parcel.origin_agency_id == agency_id,
            Parcel.dispatch_id.is_(None),
            Parcel.deleted_at.is_(None),
            Parcel.status.in_(list(ALLOWED_PARCEL_STATUSES)),
        )
        total = (await db.execute(select(func.count(Parcel.id)).where(*conditions))).scalar_one()
        result = await db.execute(
            select(Parcel)
            .where(*conditions)
            .order_by(Parcel.created_at.desc(), Parcel.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total
