"""
Inter-Agency Debt API Endpoints.

Read views of the debt ledger for the caller's agency, and settlement.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_backend.app.core.exceptions import ForbiddenError
from dispatch_backend.app.core.guards import is_elevated, require_agency
from dispatch_backend.app.core.reliability import transaction_retry
from dispatch_backend.app.db.session import get_db
from dispatch_backend.app.domain.dispatch.dispatch_service import DispatchService
from dispatch_backend.app.models.billing_enums import DebtStatus
from dispatch_backend.app.schemas.billing import DebtListResponse, DebtResponse
from dispatch_backend.app.services import inter_agency_debts as debt_service

router = APIRouter(prefix="/inter-agency-debts", tags=["Inter-Agency Debts"])


def _as_list(debts) -> DebtListResponse:
    return DebtListResponse(
        debts=[DebtResponse.model_validate(d) for d in debts],
        total_pending_in_cents=debt_service.pending_total(debts),
    )


@router.get("/owed", response_model=DebtListResponse)
async def list_owed(
    status_filter: Optional[DebtStatus] = Query(None, alias="status"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """Debts the caller's agency owes to other agencies."""
    debts = await debt_service.get_debts_by_debtor(db, current_user["agency_id"], status=status_filter)
    return _as_list(debts)


@router.get("/receivable", response_model=DebtListResponse)
async def list_receivable(
    status_filter: Optional[DebtStatus] = Query(None, alias="status"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """Debts other agencies owe to the caller's agency."""
    debts = await debt_service.get_debts_by_creditor(db, current_user["agency_id"], status=status_filter)
    return _as_list(debts)


@router.get("/between/{debtor_id}/{creditor_id}", response_model=DebtListResponse)
async def list_between(
    debtor_id: int = Path(..., description="Debtor agency ID"),
    creditor_id: int = Path(..., description="Creditor agency ID"),
    status_filter: Optional[DebtStatus] = Query(None, alias="status"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """Debts from one agency to another, with the PENDING total between them."""
    if not is_elevated(current_user.get("role")) and current_user["agency_id"] not in (debtor_id, creditor_id):
        raise ForbiddenError("You can only view debts involving your agency")

    debts = await debt_service.get_debts_between(db, debtor_id, creditor_id, status=status_filter)
    total_pending = await debt_service.get_total_pending(db, debtor_id, creditor_id)
    return DebtListResponse(
        debts=[DebtResponse.model_validate(d) for d in debts],
        total_pending_in_cents=total_pending,
    )


@router.get("/dispatch/{dispatch_id}", response_model=DebtListResponse)
async def list_by_dispatch(
    dispatch_id: int = Path(..., description="Dispatch ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    dispatch = await DispatchService.get_dispatch(db, dispatch_id)
    if not is_elevated(current_user.get("role")) and current_user["agency_id"] not in (
        dispatch.sender_agency_id, dispatch.receiver_agency_id
    ):
        raise ForbiddenError("You do not have access to this dispatch")
    return _as_list(await debt_service.get_debts_by_dispatch(db, dispatch_id))


@router.post("/{debt_id}/mark-paid", response_model=DebtResponse)
async def mark_paid(
    debt_id: int = Path(..., description="Debt ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """Settle a PENDING debt. Only the creditor agency (or an elevated role) may do this."""
    debt = await transaction_retry.call(
        debt_service.mark_debt_as_paid,
        db, debt_id, current_user["user_id"], current_user["agency_id"],
        not is_elevated(current_user.get("role")),
    )
    return DebtResponse.model_validate(debt)
