"""
Centralized Test Configuration.

Agency tree used throughout the suite:

    A (forwarder, root)
    ├── B
    │   └── C
    └── D

Pricing agreements are keyed seller → buyer (receiver → sender) for
product 1 / service 1, all PER_LB:

    B → C: 100¢/lb    A → B: 80¢/lb    A → C: 120¢/lb    A → D: 90¢/lb
"""

import pytest
from collections import namedtuple
from decimal import Decimal
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from dispatch_backend.app.main import app
from dispatch_backend.app.db.session import get_db, Base
from dispatch_backend.app.core.jwt import create_access_token
from dispatch_backend.app.models.agency import Agency
from dispatch_backend.app.models.billing_enums import Unit
from dispatch_backend.app.models.enums import AgencyType, UserRole
from dispatch_backend.app.models.order import Order, OrderItem
from dispatch_backend.app.models.parcel import Parcel
from dispatch_backend.app.models.parcel_enums import ParcelStatus
from dispatch_backend.app.models.pricing_agreement import PricingAgreement

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

PRODUCT_ID = 1
SERVICE_ID = 1


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


@pytest.fixture(scope="session", autouse=True)
def apply_overrides():
    """Route the API's sessions to the in-memory database."""
    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield
    app.dependency_overrides = {}


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


# Plain snapshots of seeded rows; ORM instances expire when a failing operation rolls back
AgencyRef = namedtuple("AgencyRef", "id name")


class Seed:
    """Builds fixture rows in the test session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def agency(self, name: str, parent: AgencyRef = None, agency_type: AgencyType = AgencyType.AGENCY) -> AgencyRef:
        agency = Agency(
            name=name,
            parent_agency_id=parent.id if parent else None,
            agency_type=agency_type,
        )
        self.db.add(agency)
        await self.db.commit()
        return AgencyRef(agency.id, agency.name)

    async def agreement(self, seller: AgencyRef, buyer: AgencyRef, price_in_cents: int) -> int:
        agreement = PricingAgreement(
            seller_agency_id=seller.id,
            buyer_agency_id=buyer.id,
            product_id=PRODUCT_ID,
            service_id=SERVICE_ID,
            price_in_cents=price_in_cents,
        )
        self.db.add(agreement)
        await self.db.commit()
        return agreement.id

    async def order(self, agency: AgencyRef) -> int:
        order = Order(agency_id=agency.id)
        self.db.add(order)
        await self.db.commit()
        return order.id

    async def parcel(
        self,
        tracking_number: str,
        origin: AgencyRef,
        weight: str = "1.00",
        order_id: int = None,
        status: ParcelStatus = ParcelStatus.IN_AGENCY,
        unit: Unit = Unit.PER_LB,
        delivery_fee_in_cents: int = 0,
        priced: bool = True,
    ) -> Parcel:
        """A parcel with one billable line item of the same weight."""
        if order_id is None:
            order_id = await self.order(origin)
        parcel = Parcel(
            tracking_number=tracking_number,
            origin_agency_id=origin.id,
            order_id=order_id,
            status=status,
            weight=Decimal(weight),
        )
        self.db.add(parcel)
        await self.db.flush()

        self.db.add(OrderItem(
            order_id=order_id,
            parcel_id=parcel.id,
            product_id=PRODUCT_ID if priced else None,
            service_id=SERVICE_ID if priced else None,
            unit=unit,
            weight=Decimal(weight),
            delivery_fee_in_cents=delivery_fee_in_cents,
        ))
        await self.db.commit()
        return parcel


@pytest.fixture
async def seed(db_session):
    return Seed(db_session)


@pytest.fixture
async def agencies(seed):
    """The A/B/C/D tree with its pricing agreements."""
    a = await seed.agency("Forwarder A", agency_type=AgencyType.FORWARDER)
    b = await seed.agency("Agency B", parent=a)
    c = await seed.agency("Agency C", parent=b)
    d = await seed.agency("Agency D", parent=a)

    await seed.agreement(b, c, 100)
    await seed.agreement(a, b, 80)
    await seed.agreement(a, c, 120)
    await seed.agreement(a, d, 90)

    return {"A": a, "B": b, "C": c, "D": d}


def make_token(agency: AgencyRef = None, role: UserRole = UserRole.AGENCY_ADMIN, user_id: int = 10) -> str:
    return create_access_token(data={
        "sub": f"user-{user_id}",
        "user_id": user_id,
        "role": role.value,
        "agency_id": agency.id if agency else None,
    })


def auth_headers(agency: AgencyRef = None, role: UserRole = UserRole.AGENCY_ADMIN, user_id: int = 10) -> dict:
    return {"Authorization": f"Bearer {make_token(agency, role, user_id)}"}


@pytest.fixture
def headers_for():
    """``headers_for(agency, role=..., user_id=...)`` builds bearer headers."""
    return auth_headers
