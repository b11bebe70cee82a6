"""
Parcel history service.

Appends ParcelEvent rows and answers the one historical question the
dispatch engine needs: which status did a parcel have before it entered
a dispatch.
"""

from typing import List, Optional, Set
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from dispatch_backend.app.domain.dispatch.state_machine import DISPATCH_PARCEL_STATUSES
from dispatch_backend.app.models.parcel_event import ParcelEvent
from dispatch_backend.app.models.parcel_enums import ParcelEventType, ParcelStatus

BASELINE_STATUS = ParcelStatus.IN_AGENCY


def record_event(
    db: AsyncSession,
    parcel_id: int,
    event_type: ParcelEventType,
    status: ParcelStatus,
    dispatch_id: Optional[int] = None,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> ParcelEvent:
    """
    Append a parcel event to the current transaction.

    Args:
        db: Database session
        parcel_id: Parcel the event belongs to
        event_type: ParcelEventType of the event
        status: Resulting parcel status
        dispatch_id: Dispatch involved, if any
        user_id: Actor
        notes: Free-text description

    Returns:
        The pending ParcelEvent (flushed with the caller's transaction)
    """
    event = ParcelEvent(
        parcel_id=parcel_id,
        event_type=event_type,
        status=status,
        dispatch_id=dispatch_id,
        user_id=user_id,
        notes=notes,
    )
    db.add(event)
    return event


async def get_events(db: AsyncSession, parcel_id: int) -> List[ParcelEvent]:
    """Events of a parcel, newest first."""
    result = await db.execute(
        select(ParcelEvent)
        .where(ParcelEvent.parcel_id == parcel_id)
        .order_by(ParcelEvent.id.desc())
    )
    return list(result.scalars().all())


async def find_status_before_dispatch(db: AsyncSession, parcel_id: int) -> ParcelStatus:
    """
    Most recent status that was not written by dispatch membership.

    Falls back to IN_AGENCY when the history holds no such status.
    """
    result = await db.execute(
        select(ParcelEvent.status)
        .where(
            ParcelEvent.parcel_id == parcel_id,
            ParcelEvent.status.notin_(list(DISPATCH_PARCEL_STATUSES)),
        )
        .order_by(ParcelEvent.id.desc())
        .limit(1)
    )
    status = result.scalar_one_or_none()
    return status if status is not None else BASELINE_STATUS


async def get_dispatch_ids_for_parcel(db: AsyncSession, parcel_id: int) -> Set[int]:
    """Every dispatch a parcel has ever been recorded in."""
    result = await db.execute(
        select(ParcelEvent.dispatch_id)
        .where(ParcelEvent.parcel_id == parcel_id, ParcelEvent.dispatch_id.isnot(None))
        .distinct()
    )
    return set(result.scalars().all())
