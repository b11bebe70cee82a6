"""
Dispatch API Endpoints.

Loading, finalizing, receiving and billing dispatches between agencies.
Every route acts on behalf of the caller's agency; ROOT and ADMINISTRATOR
may act on any agency's dispatches.
"""

from typing import Optional, List
from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_backend.app.core.config import settings
from dispatch_backend.app.core.exceptions import ForbiddenError
from dispatch_backend.app.core.guards import is_elevated, require_agency
from dispatch_backend.app.core.reliability import transaction_retry
from dispatch_backend.app.db.session import get_db
from dispatch_backend.app.domain.billing.billing_service import DispatchBillingService
from dispatch_backend.app.domain.dispatch.dispatch_service import DispatchService
from dispatch_backend.app.domain.dispatch.membership import DispatchMembershipService
from dispatch_backend.app.domain.dispatch.reception import DispatchReceptionService
from dispatch_backend.app.domain.dispatch.smart_receive import SmartReceiveService
from dispatch_backend.app.models.dispatch import Dispatch
from dispatch_backend.app.models.dispatch_enums import DispatchStatus
from dispatch_backend.app.schemas.billing import PaymentCreate, PaymentResponse
from dispatch_backend.app.schemas.dispatch import (
    AddParcelRequest,
    AddParcelsByOrderRequest,
    BatchAddResult,
    DispatchListResponse,
    DispatchResponse,
    FinalizeDispatchRequest,
    FinalizeReceptionResult,
    ReceiveParcelResult,
    ReceptionStatusResponse,
    ScanRequest,
    SmartReceiveResult,
)
from dispatch_backend.app.schemas.parcel import ParcelListResponse, ParcelResponse

router = APIRouter(prefix="/dispatches", tags=["Dispatches"])


def _ensure_party(dispatch: Dispatch, current_user: dict, sender_only: bool = False) -> None:
    """Sender (or, unless ``sender_only``, receiver) agency of the dispatch, or elevated."""
    if is_elevated(current_user.get("role")):
        return
    agency_id = current_user["agency_id"]
    if dispatch.sender_agency_id == agency_id:
        return
    if not sender_only and dispatch.receiver_agency_id == agency_id:
        return
    raise ForbiddenError(
        "You do not have access to this dispatch",
        details={"dispatch_id": dispatch.id}
    )


def _ensure_receiver(dispatch: Dispatch, current_user: dict) -> None:
    if is_elevated(current_user.get("role")):
        return
    if dispatch.receiver_agency_id != current_user["agency_id"]:
        raise ForbiddenError(
            "Only the receiver agency can receive this dispatch",
            details={"dispatch_id": dispatch.id}
        )


@router.get("", response_model=DispatchListResponse)
async def list_dispatches(
    status_filter: Optional[DispatchStatus] = Query(None, alias="status"),
    agency_id: Optional[int] = Query(None, description="Elevated roles only; defaults to the caller's agency"),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=100),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """List dispatches sent or received by the caller's agency."""
    if agency_id is None or not is_elevated(current_user.get("role")):
        agency_id = current_user["agency_id"]
    dispatches, total = await DispatchService.list_dispatches(
        db, agency_id=agency_id, status=status_filter, page=page, limit=limit
    )
    return DispatchListResponse(
        dispatches=[DispatchResponse.model_validate(d) for d in dispatches],
        total=total,
        page=page,
        page_size=limit,
    )


@router.get("/ready-for-dispatch", response_model=ParcelListResponse)
async def get_ready_for_dispatch(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=100),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """Parcels of the caller's agency that can be loaded into a dispatch."""
    parcels, total = await DispatchService.get_ready_for_dispatch(
        db, current_user["agency_id"], page=page, limit=limit
    )
    return ParcelListResponse(
        parcels=[ParcelResponse.model_validate(p) for p in parcels],
        total=total,
        page=page,
        page_size=limit,
    )


@router.post("", response_model=DispatchResponse, status_code=status.HTTP_201_CREATED)
async def create_dispatch(
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """Create an empty DRAFT dispatch sent by the caller's agency."""
    dispatch = await transaction_retry.call(
        DispatchService.create_dispatch, db, current_user["agency_id"], current_user["user_id"]
    )
    return DispatchResponse.model_validate(dispatch)


@router.post("/from-scan", response_model=BatchAddResult, status_code=status.HTTP_201_CREATED)
async def create_from_scan(
    body: ScanRequest,
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a LOADING dispatch from scanned tracking numbers.

    Parcels that cannot be added are reported as skipped with a reason.
    """
    return await transaction_retry.call(
        DispatchMembershipService.create_from_scan,
        db, body.tracking_numbers, current_user["agency_id"], current_user["user_id"],
    )


@router.post("/smart-receive", response_model=SmartReceiveResult)
async def smart_receive(
    body: ScanRequest,
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """
    Receive scanned parcels at the caller's agency, whatever dispatch they travel in.

    Partially received dispatches are split, parcels outside any dispatch
    are grouped into new reception dispatches and debts are regenerated.
    """
    return await transaction_retry.call(
        SmartReceiveService.smart_receive,
        db, body.tracking_numbers, current_user["agency_id"], current_user["user_id"],
    )


@router.get("/{dispatch_id}", response_model=DispatchResponse)
async def get_dispatch(
    dispatch_id: int = Path(..., description="Dispatch ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    dispatch = await DispatchService.get_dispatch(db, dispatch_id)
    _ensure_party(dispatch, current_user)
    return DispatchResponse.model_validate(dispatch)


@router.get("/{dispatch_id}/parcels", response_model=ParcelListResponse)
async def get_dispatch_parcels(
    dispatch_id: int = Path(..., description="Dispatch ID"),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=100),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    dispatch = await DispatchService.get_dispatch(db, dispatch_id)
    _ensure_party(dispatch, current_user)
    parcels, total = await DispatchService.get_dispatch_parcels(db, dispatch_id, page=page, limit=limit)
    return ParcelListResponse(
        parcels=[ParcelResponse.model_validate(p) for p in parcels],
        total=total,
        page=page,
        page_size=limit,
    )


@router.post("/{dispatch_id}/add-parcel", response_model=DispatchResponse)
async def add_parcel(
    body: AddParcelRequest,
    dispatch_id: int = Path(..., description="Dispatch ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """Add one parcel by tracking number to a DRAFT or LOADING dispatch."""
    _ensure_party(await DispatchService.get_dispatch(db, dispatch_id), current_user, sender_only=True)
    dispatch = await transaction_retry.call(
        DispatchMembershipService.add_parcel,
        db, dispatch_id, body.tracking_number, current_user["user_id"], current_user.get("role"),
    )
    return DispatchResponse.model_validate(dispatch)


@router.post("/{dispatch_id}/add-parcels-by-order", response_model=BatchAddResult)
async def add_parcels_by_order(
    body: AddParcelsByOrderRequest,
    dispatch_id: int = Path(..., description="Dispatch ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """Add every eligible parcel of an order; the rest are reported as skipped."""
    _ensure_party(await DispatchService.get_dispatch(db, dispatch_id), current_user, sender_only=True)
    return await transaction_retry.call(
        DispatchMembershipService.add_parcels_by_order,
        db, dispatch_id, body.order_id, current_user["user_id"], current_user.get("role"),
    )


@router.delete("/{dispatch_id}/remove-parcel/{tracking_number}", response_model=DispatchResponse)
async def remove_parcel(
    dispatch_id: int = Path(..., description="Dispatch ID"),
    tracking_number: str = Path(..., description="Parcel tracking number"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """Detach a parcel and restore the status it had before it was loaded."""
    _ensure_party(await DispatchService.get_dispatch(db, dispatch_id), current_user, sender_only=True)
    dispatch = await transaction_retry.call(
        DispatchMembershipService.remove_parcel,
        db, tracking_number, current_user["user_id"], current_user.get("role"), dispatch_id,
    )
    return DispatchResponse.model_validate(dispatch)


@router.post("/{dispatch_id}/complete-dispatch", response_model=DispatchResponse)
async def complete_dispatch(
    body: FinalizeDispatchRequest,
    dispatch_id: int = Path(..., description="Dispatch ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """Send the dispatch to a parent (or forwarder) agency."""
    dispatch = await transaction_retry.call(
        DispatchService.finalize_dispatch,
        db, dispatch_id, body.receiver_agency_id, current_user["agency_id"],
        current_user["user_id"], current_user.get("role"),
    )
    return DispatchResponse.model_validate(dispatch)


@router.post("/{dispatch_id}/receive-parcel", response_model=ReceiveParcelResult)
async def receive_parcel(
    body: AddParcelRequest,
    dispatch_id: int = Path(..., description="Dispatch ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    _ensure_receiver(await DispatchService.get_dispatch(db, dispatch_id), current_user)
    return await transaction_retry.call(
        DispatchReceptionService.receive_parcel,
        db, dispatch_id, body.tracking_number, current_user["user_id"],
    )


@router.get("/{dispatch_id}/reception-status", response_model=ReceptionStatusResponse)
async def get_reception_status(
    dispatch_id: int = Path(..., description="Dispatch ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    _ensure_party(await DispatchService.get_dispatch(db, dispatch_id), current_user)
    return await DispatchReceptionService.get_reception_status(db, dispatch_id)


@router.post("/{dispatch_id}/finalize-reception", response_model=FinalizeReceptionResult)
async def finalize_reception(
    dispatch_id: int = Path(..., description="Dispatch ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """Close reception: record discrepancies and regenerate the debts of the dispatch."""
    _ensure_receiver(await DispatchService.get_dispatch(db, dispatch_id), current_user)
    return await transaction_retry.call(
        DispatchReceptionService.finalize_reception, db, dispatch_id, current_user["user_id"],
    )


@router.get("/{dispatch_id}/payments", response_model=List[PaymentResponse])
async def list_payments(
    dispatch_id: int = Path(..., description="Dispatch ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    _ensure_party(await DispatchService.get_dispatch(db, dispatch_id), current_user)
    return await DispatchBillingService.list_payments(db, dispatch_id)


@router.post("/{dispatch_id}/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def add_payment(
    body: PaymentCreate,
    dispatch_id: int = Path(..., description="Dispatch ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """
    Record a payment against a RECEIVED dispatch.

    Card payments carry a processing charge on top of the amount; the
    amount itself may not exceed the remaining balance.
    """
    _ensure_party(await DispatchService.get_dispatch(db, dispatch_id), current_user)
    return await transaction_retry.call(
        DispatchBillingService.add_payment,
        db, dispatch_id, body.amount_in_cents, body.method, current_user["user_id"],
        body.reference, body.date, body.notes,
    )


@router.delete("/{dispatch_id}/payments/{payment_id}", response_model=DispatchResponse)
async def delete_payment(
    dispatch_id: int = Path(..., description="Dispatch ID"),
    payment_id: int = Path(..., description="Payment ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    _ensure_party(await DispatchService.get_dispatch(db, dispatch_id), current_user)
    dispatch = await transaction_retry.call(
        DispatchBillingService.delete_payment, db, dispatch_id, payment_id, current_user["user_id"],
    )
    return DispatchResponse.model_validate(dispatch)


@router.delete("/{dispatch_id}")
async def delete_dispatch(
    dispatch_id: int = Path(..., description="Dispatch ID"),
    current_user: dict = Depends(require_agency),
    db: AsyncSession = Depends(get_db)
):
    """Delete a DRAFT or CANCELLED dispatch (any status for ROOT); member parcels are restored."""
    await transaction_retry.call(
        DispatchService.delete_dispatch,
        db, dispatch_id, current_user["agency_id"], current_user["user_id"], current_user.get("role"),
    )
    return {"message": f"Dispatch {dispatch_id} deleted", "dispatch_id": dispatch_id}
