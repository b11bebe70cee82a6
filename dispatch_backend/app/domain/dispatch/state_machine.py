"""
Dispatch State Machine.

Statuses are derived from membership and reception counts, except
DISPATCHED which is set by the explicit finalize action.

    DRAFT → LOADING → DISPATCHED → RECEIVING → RECEIVED
                                            ↘ DISCREPANCY
    PARTIAL_RECEIVED (origin after a split), CANCELLED
"""

from typing import Optional

from dispatch_backend.app.core.exceptions import InvalidStateError
from dispatch_backend.app.models.dispatch_enums import DispatchStatus
from dispatch_backend.app.models.enums import UserRole
from dispatch_backend.app.models.parcel_enums import ParcelStatus

MODIFIABLE_STATUSES = frozenset({DispatchStatus.DRAFT, DispatchStatus.LOADING})
COMPLETED_STATUSES = frozenset({DispatchStatus.RECEIVED, DispatchStatus.DISCREPANCY})
IN_TRANSIT_STATUSES = frozenset({DispatchStatus.DISPATCHED, DispatchStatus.RECEIVING})
DELETABLE_STATUSES = frozenset({DispatchStatus.DRAFT, DispatchStatus.CANCELLED})

# Parcel statuses that may enter a dispatch
ALLOWED_PARCEL_STATUSES = (
    ParcelStatus.IN_AGENCY,
    ParcelStatus.IN_PALLET,
    ParcelStatus.IN_DISPATCH,
    ParcelStatus.RECEIVED_IN_DISPATCH,
    ParcelStatus.IN_WAREHOUSE,
)

# Statuses written by dispatch membership; skipped when restoring history
DISPATCH_PARCEL_STATUSES = frozenset({ParcelStatus.IN_DISPATCH, ParcelStatus.RECEIVED_IN_DISPATCH})

# Statuses of dispatch members that have been received
RECEIVED_PARCEL_STATUSES = frozenset({ParcelStatus.RECEIVED_IN_DISPATCH, ParcelStatus.IN_WAREHOUSE})

# Statuses from which a reception can be finalized
RECEPTION_STATUSES = frozenset({DispatchStatus.DISPATCHED, DispatchStatus.RECEIVING, DispatchStatus.RECEIVED})


def _role(user_role) -> Optional[UserRole]:
    if user_role is None or isinstance(user_role, UserRole):
        return user_role
    try:
        return UserRole(user_role)
    except ValueError:
        return None


def can_bypass_mutability(user_role) -> bool:
    return _role(user_role) == UserRole.ROOT


def is_modifiable(status: DispatchStatus) -> bool:
    return status in MODIFIABLE_STATUSES


def is_completed(status: Optional[DispatchStatus]) -> bool:
    return status in COMPLETED_STATUSES


def is_parcel_status_allowed(status: ParcelStatus) -> bool:
    return status in ALLOWED_PARCEL_STATUSES


def ensure_modifiable(status: DispatchStatus, user_role=None) -> None:
    """
    Raise InvalidStateError unless the dispatch accepts membership changes.

    ROOT bypasses the check.
    """
    if can_bypass_mutability(user_role):
        return
    if not is_modifiable(status):
        raise InvalidStateError(
            f"Cannot modify dispatch with status {DispatchStatus(status).value}. "
            f"Only DRAFT or LOADING dispatches can be modified.",
            details={"status": DispatchStatus(status).value}
        )


def compute_status(current: DispatchStatus, parcel_count: int, received_count: int) -> DispatchStatus:
    """
    Derive a dispatch status from its membership.

    - no parcels → DRAFT
    - not yet finalized → LOADING
    - finalized: none received → DISPATCHED, all → RECEIVED, some → RECEIVING
    - any other status is left unchanged
    """
    if parcel_count == 0:
        return DispatchStatus.DRAFT
    if current in MODIFIABLE_STATUSES:
        return DispatchStatus.LOADING
    if current in IN_TRANSIT_STATUSES:
        if received_count == 0:
            return DispatchStatus.DISPATCHED
        if received_count >= parcel_count:
            return DispatchStatus.RECEIVED
        return DispatchStatus.RECEIVING
    return current
