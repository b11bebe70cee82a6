"""
Inter-agency debt queries and settlement.

Debts are written by the dispatch engine; this module reads them and marks
them paid.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_backend.app.core.exceptions import ForbiddenError, InvalidStateError, NotFoundError
from dispatch_backend.app.db.session import transactional
from dispatch_backend.app.models.billing_enums import DebtStatus
from dispatch_backend.app.models.inter_agency_debt import InterAgencyDebt
from dispatch_backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger(__name__)


async def _list(db: AsyncSession, *conditions, status: Optional[DebtStatus] = None) -> List[InterAgencyDebt]:
    query = select(InterAgencyDebt).where(*conditions)
    if status is not None:
        query = query.where(InterAgencyDebt.status == status)
    result = await db.execute(query.order_by(desc(InterAgencyDebt.created_at), desc(InterAgencyDebt.id)))
    return list(result.scalars().all())


async def get_debts_by_debtor(
    db: AsyncSession, agency_id: int, status: Optional[DebtStatus] = None
) -> List[InterAgencyDebt]:
    """Debts the agency owes."""
    return await _list(db, InterAgencyDebt.debtor_agency_id == agency_id, status=status)


async def get_debts_by_creditor(
    db: AsyncSession, agency_id: int, status: Optional[DebtStatus] = None
) -> List[InterAgencyDebt]:
    """Debts owed to the agency."""
    return await _list(db, InterAgencyDebt.creditor_agency_id == agency_id, status=status)


async def get_debts_between(
    db: AsyncSession, debtor_agency_id: int, creditor_agency_id: int, status: Optional[DebtStatus] = None
) -> List[InterAgencyDebt]:
    return await _list(
        db,
        InterAgencyDebt.debtor_agency_id == debtor_agency_id,
        InterAgencyDebt.creditor_agency_id == creditor_agency_id,
        status=status,
    )


async def get_debts_by_dispatch(db: AsyncSession, dispatch_id: int) -> List[InterAgencyDebt]:
    return await _list(db, InterAgencyDebt.dispatch_id == dispatch_id)


async def get_total_pending(db: AsyncSession, debtor_agency_id: int, creditor_agency_id: int) -> int:
    """Sum of PENDING debts from debtor to creditor, in cents."""
    result = await db.execute(
        select(func.coalesce(func.sum(InterAgencyDebt.amount_in_cents), 0)).where(
            InterAgencyDebt.debtor_agency_id == debtor_agency_id,
            InterAgencyDebt.creditor_agency_id == creditor_agency_id,
            InterAgencyDebt.status == DebtStatus.PENDING,
        )
    )
    return int(result.scalar_one())


def pending_total(debts: List[InterAgencyDebt]) -> int:
    return sum(d.amount_in_cents for d in debts if d.status == DebtStatus.PENDING)


async def mark_debt_as_paid(
    db: AsyncSession,
    debt_id: int,
    user_id: Optional[int] = None,
    actor_agency_id: Optional[int] = None,
    restrict_to_creditor: bool = False,
) -> InterAgencyDebt:
    """
    Settle a PENDING debt.

    With ``restrict_to_creditor`` only the creditor agency (``actor_agency_id``)
    may settle it.

    Raises:
        NotFoundError: debt missing
        ForbiddenError: actor is not the creditor
        InvalidStateError: debt is not PENDING
    """
    async with transactional(db):
        result = await db.execute(
            select(InterAgencyDebt)
            .where(InterAgencyDebt.id == debt_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        debt = result.scalar_one_or_none()
        if debt is None:
            raise NotFoundError("Debt", debt_id)
        if restrict_to_creditor and debt.creditor_agency_id != actor_agency_id:
            raise ForbiddenError("Only the creditor agency can mark this debt as paid")
        if debt.status != DebtStatus.PENDING:
            raise InvalidStateError(
                f"Only PENDING debts can be marked as paid (debt {debt_id} is {DebtStatus(debt.status).value})",
                details={"status": DebtStatus(debt.status).value}
            )

        debt.status = DebtStatus.PAID
        debt.paid_at = datetime.now(timezone.utc)
        await log_event(
            db, AuditAction.DEBT_MARKED_PAID, actor_id=user_id, actor_agency_id=actor_agency_id,
            entity_type="debt", entity_id=debt.id,
            metadata={"amount_in_cents": debt.amount_in_cents, "dispatch_id": debt.dispatch_id},
        )

    logger.info("Debt marked as paid", extra={"debt_id": debt_id, "amount_in_cents": debt.amount_in_cents})
    await db.refresh(debt)
    return debt
