"""
Inter-agency debt ledger tests.
"""

import pytest
from decimal import Decimal
from sqlalchemy import select

from dispatch_backend.app.domain.billing.debt_ledger import DebtLedger
from dispatch_backend.app.domain.dispatch.loaders import load_parcels_by_tracking
from dispatch_backend.app.domain.hierarchy.agency_hierarchy import AgencyHierarchyResolver
from dispatch_backend.app.models.billing_enums import DebtRelationship, DebtStatus
from dispatch_backend.app.models.dispatch import Dispatch
from dispatch_backend.app.models.dispatch_enums import DispatchStatus
from dispatch_backend.app.models.inter_agency_debt import InterAgencyDebt
from dispatch_backend.app.services.cache import PricingCache


def make_ledger(db):
    return DebtLedger(db, AgencyHierarchyResolver(db, PricingCache()))


@pytest.mark.asyncio
async def test_direct_parent_debt(db_session, seed, agencies):
    c, b = agencies["C"], agencies["B"]
    await seed.parcel("HBL-1", c, "2.00")
    await seed.parcel("HBL-2", c, "3.00")
    parcels = await load_parcels_by_tracking(db_session, ["HBL-1", "HBL-2"])

    drafts = await make_ledger(db_session).determine_hierarchy_debts(parcels, c.id, b.id, None)

    assert len(drafts) == 1
    debt = drafts[0]
    assert (debt.debtor_agency_id, debt.creditor_agency_id) == (c.id, b.id)
    assert debt.relationship == DebtRelationship.PARENT
    assert debt.original_sender_agency_id == c.id
    assert debt.amount_in_cents == 500
    assert debt.parcels_count == 2
    assert debt.weight_in_lbs == Decimal("5.00")


@pytest.mark.asyncio
async def test_skipping_a_level_bills_parent_and_grandparent(db_session, seed, agencies):
    a, b, c = agencies["A"], agencies["B"], agencies["C"]
    await seed.parcel("HBL-1", c, "2.00")
    parcels = await load_parcels_by_tracking(db_session, ["HBL-1"])

    drafts = await make_ledger(db_session).determine_hierarchy_debts(parcels, c.id, a.id, None)

    assert [(d.debtor_agency_id, d.creditor_agency_id, d.relationship) for d in drafts] == [
        (c.id, b.id, DebtRelationship.SKIPPED_PARENT),
        (c.id, a.id, DebtRelationship.GRANDPARENT),
    ]
    # both legs priced at what A charges C
    assert {d.amount_in_cents for d in drafts} == {240}


@pytest.mark.asyncio
async def test_deeper_levels_bill_the_receiver_directly(db_session, seed, agencies):
    a = agencies["A"]
    e = await seed.agency("Agency E", parent=agencies["C"])
    await seed.agreement(a, e, 50)
    await seed.parcel("HBL-E", e, "4.00")
    parcels = await load_parcels_by_tracking(db_session, ["HBL-E"])

    drafts = await make_ledger(db_session).determine_hierarchy_debts(parcels, e.id, a.id, None)

    assert len(drafts) == 1
    assert drafts[0].creditor_agency_id == a.id
    assert drafts[0].relationship == "ancestor_level_3"
    assert drafts[0].amount_in_cents == 200


@pytest.mark.asyncio
async def test_unpriced_parcels_are_skipped_with_warning(db_session, seed, agencies):
    c, b = agencies["C"], agencies["B"]
    await seed.parcel("HBL-1", c, "2.00", priced=False)
    parcels = await load_parcels_by_tracking(db_session, ["HBL-1"])
    ledger = make_ledger(db_session)

    drafts = await ledger.determine_hierarchy_debts(parcels, c.id, b.id, None)

    assert drafts == []
    assert ledger.warnings == ["Parcel HBL-1 has no valid pricing, skipped for debts"]


@pytest.mark.asyncio
async def test_receiver_outside_chain_produces_warning(db_session, seed, agencies):
    d, b = agencies["D"], agencies["B"]
    await seed.agreement(b, d, 10)
    await seed.parcel("HBL-D", d, "1.00")
    parcels = await load_parcels_by_tracking(db_session, ["HBL-D"])
    ledger = make_ledger(db_session)

    drafts = await ledger.determine_hierarchy_debts(parcels, d.id, b.id, None)

    assert drafts == []
    assert "is not an ancestor" in ledger.warnings[0]


@pytest.mark.asyncio
async def test_already_paid_parcels_are_billed_to_the_sender(db_session, seed, agencies):
    a, b, c = agencies["A"], agencies["B"], agencies["C"]
    first_leg = Dispatch(
        sender_agency_id=c.id, receiver_agency_id=b.id, status=DispatchStatus.RECEIVED,
    )
    db_session.add(first_leg)
    await db_session.flush()
    db_session.add(InterAgencyDebt(
        debtor_agency_id=c.id, creditor_agency_id=b.id, dispatch_id=first_leg.id,
        amount_in_cents=200, relationship=DebtRelationship.PARENT, status=DebtStatus.PAID,
    ))
    parcel = await seed.parcel("HBL-1", c, "2.00")
    parcel.dispatch_id = first_leg.id
    await db_session.commit()
    parcels = await load_parcels_by_tracking(db_session, ["HBL-1"])

    drafts = await make_ledger(db_session).determine_hierarchy_debts(parcels, b.id, a.id, None)

    assert len(drafts) == 1
    assert (drafts[0].debtor_agency_id, drafts[0].creditor_agency_id) == (b.id, a.id)
    assert drafts[0].relationship == DebtRelationship.PARENT
    assert drafts[0].original_sender_agency_id == b.id
    assert drafts[0].amount_in_cents == 160

    # the paid-through agency is recorded on the stored row too
    [debt] = await make_ledger(db_session).record_debts(drafts)
    assert debt.original_sender_agency_id == b.id


@pytest.mark.asyncio
async def test_reception_debts_group_by_holder(db_session, seed, agencies):
    b, c, d = agencies["B"], agencies["C"], agencies["D"]
    await seed.parcel("HBL-C", c, "2.00")
    await seed.parcel("HBL-B", b, "1.00")
    parcels = await load_parcels_by_tracking(db_session, ["HBL-C", "HBL-B"])
    ledger = make_ledger(db_session)

    drafts = await ledger.generate_dispatch_debts(
        parcels, b.id, None, holder_of=lambda parcel: parcel.origin_agency_id
    )

    # parcels already held by the receiver produce nothing
    assert len(drafts) == 1
    assert drafts[0].debtor_agency_id == c.id
    assert drafts[0].relationship == DebtRelationship.DISPATCH_RECEPTION
    assert drafts[0].amount_in_cents == 200

    zero = await ledger.generate_dispatch_debts(parcels[:1], d.id, None, holder_of=lambda parcel: c.id)
    assert zero == []
    assert "calculated as 0" in ledger.warnings[-1]


@pytest.mark.asyncio
async def test_recalculation_cancels_pending_and_keeps_paid(db_session, seed, agencies):
    b, c = agencies["B"], agencies["C"]
    dispatch = Dispatch(sender_agency_id=c.id, receiver_agency_id=b.id, status=DispatchStatus.RECEIVED)
    db_session.add(dispatch)
    await db_session.flush()
    db_session.add(InterAgencyDebt(
        debtor_agency_id=c.id, creditor_agency_id=b.id, dispatch_id=dispatch.id,
        amount_in_cents=50, relationship=DebtRelationship.PARENT, status=DebtStatus.PAID,
    ))
    await db_session.commit()

    await seed.parcel("HBL-1", c, "2.00")
    parcels = await load_parcels_by_tracking(db_session, ["HBL-1"])

    for _ in range(2):
        ledger = make_ledger(db_session)
        await ledger.cancel_pending_debts([dispatch.id], "recalculated")
        drafts = await ledger.determine_hierarchy_debts(parcels, c.id, b.id, dispatch.id)
        await ledger.record_debts(drafts)
        await db_session.commit()

    result = await db_session.execute(
        select(InterAgencyDebt.status, InterAgencyDebt.amount_in_cents)
        .where(InterAgencyDebt.dispatch_id == dispatch.id)
        .order_by(InterAgencyDebt.id)
    )
    assert result.all() == [
        (DebtStatus.PAID, 50),
        (DebtStatus.CANCELLED, 200),
        (DebtStatus.PENDING, 200),
    ]
