"""
Explicit parcel location.

A parcel is either at rest at an agency or travelling in a dispatch. A
parcel whose dispatch is already RECEIVED/DISCREPANCY is at rest at that
dispatch's receiver. History lives in ParcelEvent and is not consulted here.
"""

from typing import NamedTuple, Optional, Union

from dispatch_backend.app.domain.dispatch.state_machine import is_completed
from dispatch_backend.app.models.dispatch import Dispatch
from dispatch_backend.app.models.dispatch_enums import DispatchStatus
from dispatch_backend.app.models.parcel import Parcel
from dispatch_backend.app.models.parcel_enums import ParcelStatus


class AtRest(NamedTuple):
    agency_id: int
    last_dispatch_id: Optional[int] = None


class InDispatch(NamedTuple):
    dispatch_id: int
    sender_agency_id: int
    receiver_agency_id: Optional[int]
    status: DispatchStatus


ParcelLocation = Union[AtRest, InDispatch]


def locate(parcel: Parcel, dispatch: Optional[Dispatch] = None) -> ParcelLocation:
    """Derive where a parcel is from its dispatch attachment."""
    if dispatch is None and parcel.dispatch_id is not None:
        dispatch = parcel.dispatch
    if parcel.dispatch_id is None or dispatch is None:
        return AtRest(parcel.origin_agency_id)
    if is_completed(dispatch.status):
        return AtRest(dispatch.receiver_agency_id or parcel.origin_agency_id, dispatch.id)
    return InDispatch(dispatch.id, dispatch.sender_agency_id, dispatch.receiver_agency_id, dispatch.status)


def holder_agency_id(location: ParcelLocation) -> int:
    """The agency physically holding the parcel."""
    if isinstance(location, AtRest):
        return location.agency_id
    return location.sender_agency_id


def attach(parcel: Parcel, dispatch: Dispatch, status: ParcelStatus = ParcelStatus.IN_DISPATCH) -> None:
    parcel.dispatch = dispatch
    parcel.dispatch_id = dispatch.id
    parcel.status = status


def detach(parcel: Parcel, status: ParcelStatus) -> None:
    parcel.dispatch = None
    parcel.dispatch_id = None
    parcel.status = status
