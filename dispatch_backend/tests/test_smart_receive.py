"""
Smart receive tests.

Tree: A (forwarder) → B → C, A → D. B receives from C; A receives from anyone.
"""

import pytest
from decimal import Decimal
from sqlalchemy import select

from dispatch_backend.app.core.exceptions import InvalidInputError, NotFoundError
from dispatch_backend.app.domain.dispatch.dispatch_service import DispatchService
from dispatch_backend.app.domain.dispatch.membership import DispatchMembershipService
from dispatch_backend.app.domain.dispatch.smart_receive import SmartReceiveService
from dispatch_backend.app.models.billing_enums import DebtRelationship, DebtStatus
from dispatch_backend.app.models.dispatch import Dispatch
from dispatch_backend.app.models.dispatch_enums import DispatchStatus
from dispatch_backend.app.models.inter_agency_debt import InterAgencyDebt
from dispatch_backend.app.models.parcel import Parcel
from dispatch_backend.app.models.parcel_enums import ParcelStatus
from dispatch_backend.app.models.parcel_event import ParcelEvent


async def dispatched(db, seed, sender, receiver, *parcels):
    for tracking_number, weight in parcels:
        await seed.parcel(tracking_number, sender, weight)
    dispatch = await DispatchService.create_dispatch(db, sender.id)
    dispatch_id = dispatch.id
    for tracking_number, _ in parcels:
        await DispatchMembershipService.add_parcel(db, dispatch_id, tracking_number)
    await DispatchService.finalize_dispatch(db, dispatch_id, receiver.id, sender.id)
    return dispatch_id


async def reload_parcel(db, tracking_number):
    result = await db.execute(
        select(Parcel).where(Parcel.tracking_number == tracking_number).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def all_debts(db):
    result = await db.execute(
        select(InterAgencyDebt).order_by(InterAgencyDebt.id).execution_options(populate_existing=True)
    )
    return result.scalars().all()


@pytest.mark.asyncio
async def test_full_dispatch_is_received_in_place(db_session, seed, agencies):
    c, b = agencies["C"], agencies["B"]
    dispatch_id = await dispatched(db_session, seed, c, b, ("HBL-1", "2.00"), ("HBL-2", "3.00"))

    result = await SmartReceiveService.smart_receive(db_session, ["HBL-1", "HBL-2"], b.id, user_id=7)

    assert result.summary.total_scanned == 2
    assert result.summary.total_received == 2
    assert result.summary.total_skipped == 0
    assert [(i.dispatch_id, i.is_new, i.parcels_count) for i in result.reception_dispatches] == [
        (dispatch_id, False, 2)
    ]
    assert result.accounting_dispatches == []
    assert {d.action for d in result.details} == {"received_in_dispatch"}

    dispatch = await db_session.get(Dispatch, dispatch_id, populate_existing=True)
    assert dispatch.status == DispatchStatus.RECEIVED
    assert dispatch.cost_in_cents == 500
    assert dispatch.weight == Decimal("5.00")
    assert dispatch.received_by_id == 7
    assert (await reload_parcel(db_session, "HBL-1")).status == ParcelStatus.RECEIVED_IN_DISPATCH

    debts = await all_debts(db_session)
    assert [(d.status, d.relationship, d.amount_in_cents) for d in debts] == [
        (DebtStatus.CANCELLED, DebtRelationship.PARENT, 500),
        (DebtStatus.PENDING, DebtRelationship.DISPATCH_RECEPTION, 500),
    ]
    assert debts[1].notes == "Smart receive: 2 parcels, 5.00 lbs"


@pytest.mark.asyncio
async def test_rescanning_is_idempotent(db_session, seed, agencies):
    c, b = agencies["C"], agencies["B"]
    await dispatched(db_session, seed, c, b, ("HBL-1", "2.00"))
    await SmartReceiveService.smart_receive(db_session, ["HBL-1"], b.id)
    debts_before = [(d.id, d.status) for d in await all_debts(db_session)]

    result = await SmartReceiveService.smart_receive(db_session, ["HBL-1"], b.id)

    assert result.summary.total_received == 0
    assert result.summary.total_skipped == 1
    assert result.details[0].reason == "Cannot receive parcel - already in your agency"
    assert result.reception_dispatches == []
    assert result.debts_created == []
    assert [(d.id, d.status) for d in await all_debts(db_session)] == debts_before


@pytest.mark.asyncio
async def test_partial_scan_splits_the_dispatch(db_session, seed, agencies):
    c, b = agencies["C"], agencies["B"]
    dispatch_id = await dispatched(db_session, seed, c, b, ("HBL-1", "2.00"), ("HBL-2", "3.00"))

    result = await SmartReceiveService.smart_receive(db_session, ["HBL-1"], b.id)

    [info] = result.reception_dispatches
    assert info.is_new
    assert info.origin_dispatch.dispatch_id == dispatch_id
    assert info.origin_dispatch.original_parcels_count == 2
    assert info.origin_dispatch.remaining_parcels_count == 1
    assert result.details[0].action == "extracted_from_dispatch"
    assert result.details[0].origin_dispatch_id == dispatch_id

    split = await db_session.get(Dispatch, info.dispatch_id, populate_existing=True)
    assert split.status == DispatchStatus.RECEIVED
    assert split.origin_dispatch_id == dispatch_id
    assert split.cost_in_cents == 200

    origin = await db_session.get(Dispatch, dispatch_id, populate_existing=True)
    assert origin.status == DispatchStatus.PARTIAL_RECEIVED
    assert origin.declared_parcels_count == 1
    assert origin.declared_weight == Decimal("3.00")
    assert (await reload_parcel(db_session, "HBL-1")).dispatch_id == split.id
    assert (await reload_parcel(db_session, "HBL-2")).dispatch_id == dispatch_id

    # the origin keeps a provisional debt for what is still travelling
    pending = [
        (d.dispatch_id, d.relationship, d.amount_in_cents)
        for d in await all_debts(db_session) if d.status == DebtStatus.PENDING
    ]
    assert sorted(pending) == sorted([
        (dispatch_id, DebtRelationship.PARENT, 300),
        (split.id, DebtRelationship.DISPATCH_RECEPTION, 200),
    ])


@pytest.mark.asyncio
async def test_rest_of_a_split_dispatch_can_be_received_later(db_session, seed, agencies):
    c, b = agencies["C"], agencies["B"]
    dispatch_id = await dispatched(db_session, seed, c, b, ("HBL-1", "2.00"), ("HBL-2", "3.00"))
    await SmartReceiveService.smart_receive(db_session, ["HBL-1"], b.id)

    result = await SmartReceiveService.smart_receive(db_session, ["HBL-2"], b.id)

    assert [(i.dispatch_id, i.is_new) for i in result.reception_dispatches] == [(dispatch_id, False)]
    origin = await db_session.get(Dispatch, dispatch_id, populate_existing=True)
    assert origin.status == DispatchStatus.RECEIVED
    assert origin.cost_in_cents == 300

    pending = [d for d in await all_debts(db_session) if d.status == DebtStatus.PENDING]
    assert sorted(d.amount_in_cents for d in pending) == [200, 300]
    assert {d.relationship for d in pending} == {DebtRelationship.DISPATCH_RECEPTION}


@pytest.mark.asyncio
async def test_parcels_at_rest_join_matching_dispatch_as_surplus(db_session, seed, agencies):
    c, b = agencies["C"], agencies["B"]
    dispatch_id = await dispatched(db_session, seed, c, b, ("HBL-1", "2.00"))
    await seed.parcel("HBL-LOOSE", c, "1.00")

    result = await SmartReceiveService.smart_receive(db_session, ["HBL-1", "HBL-LOOSE"], b.id)

    assert result.summary.surplus_added == 1
    [info] = result.reception_dispatches
    assert (info.dispatch_id, info.surplus_parcels, info.parcels_count) == (dispatch_id, 1, 2)
    loose = next(d for d in result.details if d.tracking_number == "HBL-LOOSE")
    assert loose.action == "surplus_added"

    dispatch = await db_session.get(Dispatch, dispatch_id, populate_existing=True)
    assert dispatch.status == DispatchStatus.RECEIVED
    assert dispatch.received_parcels_count == 2
    assert dispatch.cost_in_cents == 300
    assert (await reload_parcel(db_session, "HBL-LOOSE")).dispatch_id == dispatch_id


@pytest.mark.asyncio
async def test_forwarder_receiving_from_grandchild_gets_accounting_leg(db_session, seed, agencies):
    a, b, c = agencies["A"], agencies["B"], agencies["C"]
    await seed.parcel("HBL-C", c, "2.00")

    result = await SmartReceiveService.smart_receive(db_session, ["HBL-C"], a.id, user_id=1)

    [reception] = result.reception_dispatches
    assert reception.is_new
    assert reception.sender_agency_id == b.id
    [accounting] = result.accounting_dispatches
    assert (accounting.sender_agency_id, accounting.receiver_agency_id) == (c.id, b.id)
    assert accounting.origin_dispatch_id == reception.dispatch_id

    parcel = await reload_parcel(db_session, "HBL-C")
    assert parcel.status == ParcelStatus.IN_WAREHOUSE
    assert parcel.dispatch_id == reception.dispatch_id

    # the accounting leg carries no parcels
    members = await db_session.execute(select(Parcel.id).where(Parcel.dispatch_id == accounting.dispatch_id))
    assert members.all() == []

    debts = [(d.debtor_agency_id, d.creditor_agency_id, d.amount_in_cents) for d in await all_debts(db_session)]
    assert debts == [(b.id, a.id, 160), (c.id, b.id, 200)]

    events = await db_session.execute(select(ParcelEvent.notes).where(ParcelEvent.parcel_id == parcel.id))
    assert events.scalar_one().endswith("(arrived at warehouse)")


@pytest.mark.asyncio
async def test_received_parcels_move_on_from_the_intermediate_agency(db_session, seed, agencies):
    a, b, c = agencies["A"], agencies["B"], agencies["C"]
    first_leg = await dispatched(db_session, seed, c, b, ("HBL-1", "2.00"))
    await SmartReceiveService.smart_receive(db_session, ["HBL-1"], b.id)

    result = await SmartReceiveService.smart_receive(db_session, ["HBL-1"], a.id)

    [reception] = result.reception_dispatches
    assert reception.sender_agency_id == b.id
    assert result.accounting_dispatches == []
    parcel = await reload_parcel(db_session, "HBL-1")
    assert parcel.dispatch_id == reception.dispatch_id
    assert parcel.dispatch_id != first_leg
    assert [(d.debtor_agency_id, d.creditor_agency_id, d.amount_in_cents) for d in result.debts_created] == [
        (b.id, a.id, 160)
    ]


@pytest.mark.asyncio
async def test_skip_reasons(db_session, seed, agencies):
    b, d = agencies["B"], agencies["D"]
    await seed.parcel("HBL-D", d)
    await seed.parcel("HBL-B", b)

    result = await SmartReceiveService.smart_receive(
        db_session, ["HBL-D", "HBL-D", "HBL-X", "HBL-B"], b.id
    )

    assert result.summary.total_received == 0
    assert [d.reason for d in result.details] == [
        'Cannot receive from agency "Agency D" - not a child agency',
        "Duplicate scan",
        "Parcel not found",
        "Cannot receive parcel - already in your agency",
    ]
    assert (await db_session.execute(select(Dispatch))).scalars().all() == []


@pytest.mark.asyncio
async def test_invalid_requests(db_session, agencies):
    with pytest.raises(InvalidInputError):
        await SmartReceiveService.smart_receive(db_session, [], agencies["B"].id)
    with pytest.raises(NotFoundError):
        await SmartReceiveService.smart_receive(db_session, ["HBL-1"], 9999)
