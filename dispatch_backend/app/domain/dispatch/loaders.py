"""
Transaction-scoped reads shared by the dispatch services.

Gating reads lock their rows (``FOR UPDATE``) and bypass the identity map so
decisions are taken on the state seen inside the current transaction. Pending
changes are flushed first so a refreshing read never discards them.
"""

from decimal import Decimal
from typing import List, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_backend.app.core.exceptions import NotFoundError
from dispatch_backend.app.domain.billing.cost_calculator import round_weight, to_decimal
from dispatch_backend.app.models.dispatch import Dispatch
from dispatch_backend.app.models.parcel import Parcel


async def lock_dispatch(db: AsyncSession, dispatch_id: int) -> Dispatch:
    await db.flush()
    result = await db.execute(
        select(Dispatch)
        .where(Dispatch.id == dispatch_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    dispatch = result.scalar_one_or_none()
    if dispatch is None:
        raise NotFoundError("Dispatch", dispatch_id)
    return dispatch


async def lock_parcel(db: AsyncSession, tracking_number: str) -> Parcel:
    await db.flush()
    result = await db.execute(
        select(Parcel)
        .where(Parcel.tracking_number == tracking_number)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    parcel = result.scalar_one_or_none()
    if parcel is None:
        raise NotFoundError("Parcel", message=f"Parcel with tracking number {tracking_number} not found")
    return parcel


async def load_parcels_by_tracking(db: AsyncSession, tracking_numbers: Sequence[str]) -> List[Parcel]:
    await db.flush()
    result = await db.execute(
        select(Parcel)
        .where(Parcel.tracking_number.in_(list(tracking_numbers)))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def load_members(db: AsyncSession, dispatch_id: int) -> List[Parcel]:
    """Parcels currently attached to a dispatch."""
    await db.flush()
    result = await db.execute(
        select(Parcel)
        .where(Parcel.dispatch_id == dispatch_id)
        .order_by(Parcel.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def membership_totals(db: AsyncSession, dispatch_id: int) -> Tuple[int, Decimal]:
    """Count and rounded total weight of the parcels attached to a dispatch."""
    await db.flush()
    result = await db.execute(
        select(func.count(Parcel.id), func.coalesce(func.sum(Parcel.weight), 0))
        .where(Parcel.dispatch_id == dispatch_id)
    )
    count, weight = result.one()
    return count, round_weight(to_decimal(weight))


async def count_members_with_status(db: AsyncSession, dispatch_id: int, statuses) -> int:
    await db.flush()
    result = await db.execute(
        select(func.count(Parcel.id))
        .where(Parcel.dispatch_id == dispatch_id, Parcel.status.in_(list(statuses)))
    )
    return result.scalar_one()
