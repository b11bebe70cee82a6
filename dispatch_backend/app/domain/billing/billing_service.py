"""
Dispatch Billing Service (Domain Logic).

Payments recorded against a received dispatch. ``paid_in_cents`` and
``payment_status`` are always recomputed from the payment rows, never
adjusted incrementally.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_backend.app.core.config import settings
from dispatch_backend.app.core.exceptions import InvalidInputError, InvalidStateError, NotFoundError
from dispatch_backend.app.db.session import transactional
from dispatch_backend.app.domain.dispatch.loaders import lock_dispatch
from dispatch_backend.app.models.dispatch import Dispatch
from dispatch_backend.app.models.dispatch_enums import DispatchStatus, PaymentMethod, PaymentStatus
from dispatch_backend.app.models.dispatch_payment import DispatchPayment
from dispatch_backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger(__name__)

CARD_METHODS = frozenset({PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD})


def card_processing_charge(amount_in_cents: int, method: PaymentMethod) -> int:
    """Processing charge in cents for card payments, 0 otherwise."""
    if method not in CARD_METHODS:
        return 0
    charge = Decimal(amount_in_cents) * Decimal(str(settings.card_processing_fee_rate))
    return int(charge.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class DispatchBillingService:

    @staticmethod
    async def recompute_payment_status(db: AsyncSession, dispatch: Dispatch) -> None:
        """Derive ``paid_in_cents`` and ``payment_status`` from the dispatch's payments."""
        await db.flush()
        result = await db.execute(
            select(func.coalesce(func.sum(DispatchPayment.amount_in_cents), 0))
            .where(DispatchPayment.dispatch_id == dispatch.id)
        )
        paid = int(result.scalar_one())

        dispatch.paid_in_cents = paid
        if paid > 0 and paid >= (dispatch.cost_in_cents or 0):
            dispatch.payment_status = PaymentStatus.PAID
        elif paid > 0:
            dispatch.payment_status = PaymentStatus.PARTIALLY_PAID
        else:
            dispatch.payment_status = PaymentStatus.PENDING

    @staticmethod
    async def add_payment(
        db: AsyncSession,
        dispatch_id: int,
        amount_in_cents: int,
        method: PaymentMethod,
        user_id: Optional[int] = None,
        reference: Optional[str] = None,
        date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> DispatchPayment:
        """
        Record a payment against a RECEIVED dispatch.

        Flow:
        1. Validate amount and dispatch state
        2. Compute card processing charge
        3. Reject payments larger than the remaining balance
        4. Persist and recompute payment status

        Raises:
            InvalidInputError: non-positive amount or amount above the balance
            NotFoundError: dispatch missing
            InvalidStateError: dispatch not RECEIVED, or already fully paid
        """
        if amount_in_cents <= 0:
            raise InvalidInputError("Payment amount must be greater than 0")

        async with transactional(db):
            dispatch = await lock_dispatch(db, dispatch_id)
            if dispatch.status != DispatchStatus.RECEIVED:
                raise InvalidStateError(
                    f"Payments can only be added to RECEIVED dispatches "
                    f"(dispatch {dispatch.id} is {DispatchStatus(dispatch.status).value})",
                    details={"status": DispatchStatus(dispatch.status).value}
                )
            if dispatch.payment_status == PaymentStatus.PAID:
                raise InvalidStateError(f"Dispatch {dispatch.id} is already paid")

            charge = card_processing_charge(amount_in_cents, method)
            if charge > 0:
                fee_note = (
                    f"Card processing fee ({settings.card_processing_fee_rate * 100:g}%): ${charge / 100:.2f}"
                )
                notes = f"{notes}. {fee_note}" if notes else fee_note

            remaining = (dispatch.cost_in_cents or 0) - (dispatch.paid_in_cents or 0)
            if amount_in_cents > remaining:
                raise InvalidInputError(
                    f"Payment amount ({amount_in_cents}) exceeds remaining balance ({remaining})",
                    details={"remaining_in_cents": remaining}
                )

            payment = DispatchPayment(
                dispatch_id=dispatch.id,
                amount_in_cents=amount_in_cents,
                charge_in_cents=charge,
                method=method,
                reference=reference,
                notes=notes,
                paid_by_id=user_id,
            )
            if date is not None:
                payment.date = date
            db.add(payment)
            await DispatchBillingService.recompute_payment_status(db, dispatch)

            await log_event(
                db, AuditAction.DISPATCH_PAYMENT_ADDED, actor_id=user_id,
                entity_type="dispatch", entity_id=dispatch.id,
                metadata={
                    "amount_in_cents": amount_in_cents,
                    "charge_in_cents": charge,
                    "method": method.value,
                },
            )

        logger.info(
            "Dispatch payment added",
            extra={"dispatch_id": dispatch_id, "amount_in_cents": amount_in_cents, "method": method.value}
        )
        await db.refresh(payment)
        return payment

    @staticmethod
    async def delete_payment(
        db: AsyncSession,
        dispatch_id: int,
        payment_id: int,
        user_id: Optional[int] = None,
    ) -> Dispatch:
        """
        Delete a payment and recompute the dispatch's payment status.

        Raises:
            NotFoundError: dispatch or payment missing
        """
        async with transactional(db):
            dispatch = await lock_dispatch(db, dispatch_id)
            result = await db.execute(
                select(DispatchPayment).where(
                    DispatchPayment.id == payment_id,
                    DispatchPayment.dispatch_id == dispatch.id,
                )
            )
            payment = result.scalar_one_or_none()
            if payment is None:
                raise NotFoundError("Payment", payment_id)

            amount = payment.amount_in_cents
            await db.delete(payment)
            await DispatchBillingService.recompute_payment_status(db, dispatch)

            await log_event(
                db, AuditAction.DISPATCH_PAYMENT_DELETED, actor_id=user_id,
                entity_type="dispatch", entity_id=dispatch.id,
                metadata={"payment_id": payment_id, "amount_in_cents": amount},
            )

        logger.info("Dispatch payment deleted", extra={"dispatch_id": dispatch_id, "payment_id": payment_id})
        await db.refresh(dispatch)
        return dispatch

    @staticmethod
    async def list_payments(db: AsyncSession, dispatch_id: int) -> List[DispatchPayment]:
        dispatch = await db.get(Dispatch, dispatch_id)
        if dispatch is None:
            raise NotFoundError("Dispatch", dispatch_id)
        result = await db.execute(
            select(DispatchPayment)
            .where(DispatchPayment.dispatch_id == dispatch_id)
            .order_by(DispatchPayment.date.desc(), DispatchPayment.id.desc())
        )
        return list(result.scalars().all())
