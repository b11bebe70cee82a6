"""
Dispatch lifecycle and parcel membership tests.

A failing operation rolls the session back and expires every loaded
instance, so ids are captured before expected errors and rows re-read after.
"""

import pytest
from decimal import Decimal
from sqlalchemy import select, update

from dispatch_backend.app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from dispatch_backend.app.domain.dispatch import membership
from dispatch_backend.app.domain.dispatch.dispatch_service import DispatchService
from dispatch_backend.app.domain.dispatch.membership import CONCURRENT_CLAIM_REASON, DispatchMembershipService
from dispatch_backend.app.models.billing_enums import DebtRelationship, DebtStatus
from dispatch_backend.app.models.dispatch import Dispatch
from dispatch_backend.app.models.dispatch_enums import DispatchStatus
from dispatch_backend.app.models.enums import UserRole
from dispatch_backend.app.models.inter_agency_debt import InterAgencyDebt
from dispatch_backend.app.models.parcel import Parcel
from dispatch_backend.app.models.parcel_enums import ParcelEventType, ParcelStatus
from dispatch_backend.app.models.parcel_event import ParcelEvent
from dispatch_backend.app.services.audit import AuditAction, get_audit_trail


async def reload_parcel(db, tracking_number):
    result = await db.execute(
        select(Parcel).where(Parcel.tracking_number == tracking_number).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def reload_dispatch(db, dispatch_id):
    return await db.get(Dispatch, dispatch_id, populate_existing=True)


async def new_dispatch_id(db, agency):
    dispatch = await DispatchService.create_dispatch(db, agency.id)
    return dispatch.id


@pytest.mark.asyncio
async def test_create_and_load_dispatch(db_session, seed, agencies):
    c = agencies["C"]
    await seed.parcel("HBL-1", c, "2.50")
    await seed.parcel("HBL-2", c, "1.25")

    dispatch = await DispatchService.create_dispatch(db_session, c.id, user_id=1)
    assert dispatch.status == DispatchStatus.DRAFT

    await DispatchMembershipService.add_parcel(db_session, dispatch.id, "HBL-1", user_id=1)
    dispatch = await DispatchMembershipService.add_parcel(db_session, dispatch.id, "HBL-2", user_id=1)

    assert dispatch.status == DispatchStatus.LOADING
    assert dispatch.declared_parcels_count == 2
    assert dispatch.declared_weight == Decimal("3.75")

    parcel = await reload_parcel(db_session, "HBL-1")
    assert parcel.dispatch_id == dispatch.id
    assert parcel.status == ParcelStatus.IN_DISPATCH

    trail = await get_audit_trail(db_session, entity_type="dispatch", entity_id=dispatch.id)
    assert [entry.action for entry in trail] == [AuditAction.DISPATCH_CREATED]


@pytest.mark.asyncio
async def test_sub_agency_parcels_can_be_added(db_session, seed, agencies):
    await seed.parcel("HBL-C", agencies["C"])
    dispatch_id = await new_dispatch_id(db_session, agencies["B"])

    dispatch = await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-C")

    assert dispatch.declared_parcels_count == 1


@pytest.mark.asyncio
async def test_foreign_parcel_is_forbidden(db_session, seed, agencies):
    await seed.parcel("HBL-D", agencies["D"])
    dispatch_id = await new_dispatch_id(db_session, agencies["C"])

    with pytest.raises(ForbiddenError):
        await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-D")

    # ROOT bypasses ownership
    dispatch = await DispatchMembershipService.add_parcel(
        db_session, dispatch_id, "HBL-D", user_role=UserRole.ROOT
    )
    assert dispatch.declared_parcels_count == 1


@pytest.mark.asyncio
async def test_add_parcel_rejections(db_session, seed, agencies):
    c = agencies["C"]
    await seed.parcel("HBL-1", c)
    await seed.parcel("HBL-DELIVERED", c, status=ParcelStatus.DELIVERED)
    first_id = await new_dispatch_id(db_session, c)
    second_id = await new_dispatch_id(db_session, c)
    await DispatchMembershipService.add_parcel(db_session, first_id, "HBL-1")

    with pytest.raises(NotFoundError):
        await DispatchMembershipService.add_parcel(db_session, first_id, "HBL-MISSING")
    with pytest.raises(NotFoundError):
        await DispatchMembershipService.add_parcel(db_session, 9999, "HBL-1")
    with pytest.raises(ConflictError):
        await DispatchMembershipService.add_parcel(db_session, first_id, "HBL-1")
    with pytest.raises(ConflictError):
        await DispatchMembershipService.add_parcel(db_session, second_id, "HBL-1")
    with pytest.raises(InvalidStateError):
        await DispatchMembershipService.add_parcel(db_session, second_id, "HBL-DELIVERED")

    second = await reload_dispatch(db_session, second_id)
    assert second.declared_parcels_count == 0
    assert second.status == DispatchStatus.DRAFT


@pytest.mark.asyncio
async def test_dispatched_dispatch_is_not_modifiable(db_session, seed, agencies):
    c, b = agencies["C"], agencies["B"]
    await seed.parcel("HBL-1", c)
    await seed.parcel("HBL-2", c)
    dispatch_id = await new_dispatch_id(db_session, c)
    await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-1")
    await DispatchService.finalize_dispatch(db_session, dispatch_id, b.id, c.id)

    with pytest.raises(InvalidStateError, match="Only DRAFT or LOADING"):
        await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-2")
    with pytest.raises(InvalidStateError, match="Only DRAFT or LOADING"):
        await DispatchMembershipService.remove_parcel(db_session, "HBL-1", dispatch_id=dispatch_id)


@pytest.mark.asyncio
async def test_remove_parcel_restores_previous_status(db_session, seed, agencies):
    c = agencies["C"]
    await seed.parcel("HBL-1", c, "2.00", status=ParcelStatus.IN_PALLET)
    await seed.parcel("HBL-2", c, "3.00")
    dispatch_id = await new_dispatch_id(db_session, c)
    await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-1")
    await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-2")

    dispatch = await DispatchMembershipService.remove_parcel(db_session, "HBL-2", dispatch_id=dispatch_id)
    assert dispatch.status == DispatchStatus.LOADING
    assert dispatch.declared_parcels_count == 1
    assert dispatch.declared_weight == Decimal("2.00")

    dispatch = await DispatchMembershipService.remove_parcel(db_session, "HBL-1")
    assert dispatch.status == DispatchStatus.DRAFT
    assert dispatch.declared_parcels_count == 0

    # no pre-dispatch event in history: baseline status
    parcel = await reload_parcel(db_session, "HBL-1")
    assert parcel.dispatch_id is None
    assert parcel.status == ParcelStatus.IN_AGENCY

    with pytest.raises(InvalidStateError):
        await DispatchMembershipService.remove_parcel(db_session, "HBL-1")


@pytest.mark.asyncio
async def test_add_parcels_by_order_skips_ineligible(db_session, seed, agencies):
    c = agencies["C"]
    order_id = await seed.order(c)
    await seed.parcel("HBL-1", c, "1.00", order_id=order_id)
    await seed.parcel("HBL-2", c, "2.00", order_id=order_id)
    await seed.parcel("HBL-3", c, "4.00", order_id=order_id, status=ParcelStatus.DELIVERED)
    other_id = await new_dispatch_id(db_session, c)
    await DispatchMembershipService.add_parcel(db_session, other_id, "HBL-2")
    dispatch_id = await new_dispatch_id(db_session, c)

    result = await DispatchMembershipService.add_parcels_by_order(db_session, dispatch_id, order_id)

    assert result.added == 1
    assert result.skipped == 2
    assert result.dispatch.status == DispatchStatus.LOADING
    assert result.dispatch.declared_parcels_count == 1
    assert result.dispatch.declared_weight == Decimal("1.00")
    reasons = {d.tracking_number: d.reason for d in result.details if d.status == "skipped"}
    assert reasons["HBL-2"] == f"Parcel is already in dispatch {other_id}"
    assert "DELIVERED" in reasons["HBL-3"]


@pytest.mark.asyncio
async def test_add_parcels_by_order_errors(db_session, seed, agencies):
    c = agencies["C"]
    order_id = await seed.order(c)
    await seed.parcel("HBL-1", c, order_id=order_id, status=ParcelStatus.DELIVERED)
    empty_order_id = await seed.order(c)
    dispatch_id = await new_dispatch_id(db_session, c)

    with pytest.raises(NotFoundError):
        await DispatchMembershipService.add_parcels_by_order(db_session, dispatch_id, empty_order_id)
    with pytest.raises(InvalidInputError):
        await DispatchMembershipService.add_parcels_by_order(db_session, dispatch_id, order_id)


@pytest.mark.asyncio
async def test_create_from_scan(db_session, seed, agencies):
    c = agencies["C"]
    await seed.parcel("HBL-1", c, "1.50")
    await seed.parcel("HBL-2", c, "2.50")
    await seed.parcel("HBL-D", agencies["D"])

    result = await DispatchMembershipService.create_from_scan(
        db_session, ["HBL-1", "HBL-2", "HBL-1", "HBL-X", "HBL-D"], c.id, user_id=1
    )

    assert result.added == 2
    assert result.skipped == 3
    assert result.dispatch.status == DispatchStatus.LOADING
    assert result.dispatch.declared_parcels_count == 2
    assert result.dispatch.declared_weight == Decimal("4.00")
    assert [d.reason for d in result.details if d.status == "skipped"] == [
        "Duplicate scan",
        "Parcel not found",
        "Parcel does not belong to the sender agency or its sub-agencies",
    ]

    events = await db_session.execute(
        select(ParcelEvent).where(ParcelEvent.dispatch_id == result.dispatch.id)
    )
    assert len(events.scalars().all()) == 2


@pytest.mark.asyncio
async def test_create_from_scan_without_valid_parcels(db_session, seed, agencies):
    c = agencies["C"]
    with pytest.raises(InvalidInputError):
        await DispatchMembershipService.create_from_scan(db_session, ["HBL-X"], c.id)
    with pytest.raises(InvalidInputError):
        await DispatchMembershipService.create_from_scan(db_session, [], c.id)

    dispatches = await db_session.execute(select(Dispatch))
    assert dispatches.scalars().all() == []


@pytest.mark.asyncio
async def test_create_from_scan_loses_parcel_to_concurrent_dispatch(db_session, seed, agencies, mocker):
    c = agencies["C"]
    await seed.parcel("HBL-1", c, "1.00")
    await seed.parcel("HBL-2", c, "2.00")
    rival_id = await new_dispatch_id(db_session, c)
    original = membership._classify_scan

    async def racing_classify(db, resolver, tracking_numbers, sender_agency_id):
        details, candidates = await original(db, resolver, tracking_numbers, sender_agency_id)
        stolen = next(p for p in candidates if p.tracking_number == "HBL-1")
        await db.execute(
            update(Parcel)
            .where(Parcel.id == stolen.id)
            .values(dispatch_id=rival_id, status=ParcelStatus.IN_DISPATCH)
            .execution_options(synchronize_session=False)
        )
        return details, candidates

    mocker.patch.object(membership, "_classify_scan", new=racing_classify)

    result = await DispatchMembershipService.create_from_scan(db_session, ["HBL-1", "HBL-2"], c.id)

    assert result.added == 1
    assert result.skipped == 1
    assert result.dispatch.declared_parcels_count == 1
    assert result.dispatch.declared_weight == Decimal("2.00")
    lost = next(d for d in result.details if d.tracking_number == "HBL-1")
    assert lost.status == "skipped"
    assert lost.reason == CONCURRENT_CLAIM_REASON

    parcel = await reload_parcel(db_session, "HBL-1")
    assert parcel.dispatch_id == rival_id


@pytest.mark.asyncio
async def test_add_parcel_detects_concurrent_claim(db_session, seed, agencies, mocker):
    c = agencies["C"]
    await seed.parcel("HBL-1", c)
    rival_id = await new_dispatch_id(db_session, c)
    dispatch_id = await new_dispatch_id(db_session, c)
    original = membership.lock_parcel

    async def racing_lock(db, tracking_number):
        parcel = await original(db, tracking_number)
        await db.execute(
            update(Parcel)
            .where(Parcel.id == parcel.id)
            .values(dispatch_id=rival_id)
            .execution_options(synchronize_session=False)
        )
        return parcel

    mocker.patch.object(membership, "lock_parcel", new=racing_lock)

    with pytest.raises(ConflictError):
        await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-1")

    # the whole attach rolled back, including the competing write in this session
    dispatch = await reload_dispatch(db_session, dispatch_id)
    assert dispatch.declared_parcels_count == 0
    parcel = await reload_parcel(db_session, "HBL-1")
    assert parcel.dispatch_id is None


@pytest.mark.asyncio
async def test_finalize_dispatch(db_session, seed, agencies):
    c, b = agencies["C"], agencies["B"]
    await seed.parcel("HBL-1", c, "2.00")
    await seed.parcel("HBL-2", c, "3.00")
    dispatch_id = await new_dispatch_id(db_session, c)
    await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-1")
    await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-2")

    dispatch = await DispatchService.finalize_dispatch(db_session, dispatch_id, b.id, c.id, user_id=1)

    assert dispatch.status == DispatchStatus.DISPATCHED
    assert dispatch.receiver_agency_id == b.id
    assert dispatch.declared_cost_in_cents == 500

    debts = (await db_session.execute(
        select(InterAgencyDebt).where(InterAgencyDebt.dispatch_id == dispatch_id)
    )).scalars().all()
    assert [(d.debtor_agency_id, d.creditor_agency_id, d.amount_in_cents, d.relationship, d.status)
            for d in debts] == [(c.id, b.id, 500, DebtRelationship.PARENT, DebtStatus.PENDING)]


@pytest.mark.asyncio
async def test_finalize_dispatch_rules(db_session, seed, agencies):
    a, b, c, d = (agencies[k] for k in "ABCD")
    await seed.parcel("HBL-1", c)
    await seed.parcel("HBL-B", b)
    empty_id = await new_dispatch_id(db_session, c)
    dispatch_id = await new_dispatch_id(db_session, c)
    await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-1")

    with pytest.raises(InvalidInputError):
        await DispatchService.finalize_dispatch(db_session, dispatch_id, c.id, c.id)
    with pytest.raises(NotFoundError):
        await DispatchService.finalize_dispatch(db_session, dispatch_id, 9999, c.id)
    with pytest.raises(ForbiddenError):
        await DispatchService.finalize_dispatch(db_session, dispatch_id, d.id, c.id)
    with pytest.raises(InvalidStateError):
        await DispatchService.finalize_dispatch(db_session, empty_id, b.id, c.id)

    # the forwarder may always be the receiver, skipping B
    dispatch = await DispatchService.finalize_dispatch(db_session, dispatch_id, a.id, c.id)
    assert dispatch.status == DispatchStatus.DISPATCHED
    assert dispatch.declared_cost_in_cents == 120
    with pytest.raises(InvalidStateError):
        await DispatchService.finalize_dispatch(db_session, dispatch_id, a.id, c.id)

    # a sibling cannot receive from B, only ancestors or the forwarder
    sibling_id = await new_dispatch_id(db_session, b)
    await DispatchMembershipService.add_parcel(db_session, sibling_id, "HBL-B")
    with pytest.raises(ForbiddenError):
        await DispatchService.finalize_dispatch(db_session, sibling_id, d.id, b.id)


@pytest.mark.asyncio
async def test_delete_dispatch_restores_parcels(db_session, seed, agencies):
    c, b = agencies["C"], agencies["B"]
    await seed.parcel("HBL-1", c, status=ParcelStatus.IN_PALLET)
    dispatch_id = await new_dispatch_id(db_session, c)
    await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-1")
    await DispatchService.finalize_dispatch(db_session, dispatch_id, b.id, c.id)

    with pytest.raises(InvalidStateError):
        await DispatchService.delete_dispatch(db_session, dispatch_id, c.id, user_role=UserRole.AGENCY_ADMIN)
    with pytest.raises(ForbiddenError):
        await DispatchService.delete_dispatch(db_session, dispatch_id, b.id, user_role=UserRole.AGENCY_ADMIN)

    await DispatchService.delete_dispatch(db_session, dispatch_id, c.id, user_role=UserRole.ROOT)

    assert await db_session.get(Dispatch, dispatch_id, populate_existing=True) is None
    parcel = await reload_parcel(db_session, "HBL-1")
    assert parcel.dispatch_id is None
    assert parcel.status == ParcelStatus.IN_AGENCY

    debts = (await db_session.execute(
        select(InterAgencyDebt).execution_options(populate_existing=True)
    )).scalars().all()
    assert [(d.status, d.dispatch_id) for d in debts] == [(DebtStatus.CANCELLED, None)]


@pytest.mark.asyncio
async def test_list_and_ready_for_dispatch(db_session, seed, agencies):
    c, b = agencies["C"], agencies["B"]
    await seed.parcel("HBL-1", c)
    await seed.parcel("HBL-2", c)
    await seed.parcel("HBL-3", c, status=ParcelStatus.DELIVERED)
    dispatch_id = await new_dispatch_id(db_session, c)
    await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-1")
    await DispatchService.create_dispatch(db_session, b.id)

    ready, total = await DispatchService.get_ready_for_dispatch(db_session, c.id)
    assert total == 1
    assert [p.tracking_number for p in ready] == ["HBL-2"]

    dispatches, total = await DispatchService.list_dispatches(db_session, agency_id=c.id)
    assert total == 1
    dispatches, total = await DispatchService.list_dispatches(db_session, status=DispatchStatus.DRAFT)
    assert total == 1

    parcels, total = await DispatchService.get_dispatch_parcels(db_session, dispatch_id)
    assert total == 1
    assert parcels[0].tracking_number == "HBL-1"


@pytest.mark.asyncio
async def test_remove_restores_status_from_history_and_readd_round_trips(db_session, seed, agencies):
    c = agencies["C"]
    parcel = await seed.parcel("HBL-1", c, "1.75", status=ParcelStatus.IN_PALLET)
    db_session.add(ParcelEvent(
        parcel_id=parcel.id, event_type=ParcelEventType.ADDED_TO_PALLET, status=ParcelStatus.IN_PALLET,
    ))
    await db_session.commit()
    dispatch_id = await new_dispatch_id(db_session, c)
    await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-1")

    dispatch = await DispatchMembershipService.remove_parcel(db_session, "HBL-1", dispatch_id=dispatch_id)
    assert dispatch.declared_weight == Decimal("0.00")
    assert (await reload_parcel(db_session, "HBL-1")).status == ParcelStatus.IN_PALLET

    dispatch = await DispatchMembershipService.add_parcel(db_session, dispatch_id, "HBL-1")
    assert dispatch.declared_weight == Decimal("1.75")
    assert dispatch.declared_parcels_count == 1
    assert (await reload_parcel(db_session, "HBL-1")).status == ParcelStatus.IN_DISPATCH
