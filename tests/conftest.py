"""
Shared fixtures: a fresh SQLite database per test, a pinned clock, a
recording notifier, encrypted local storage under tmp_path and a small seeded
world of principals, a property and a unit.

The environment is set before anything from ``leaseledger`` is imported so
that ``settings`` picks it up.
"""

import os

from cryptography.fernet import Fernet

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DATABASE_URL_SYNC"] = "sqlite://"
os.environ["API_SECRET_KEY"] = "test-secret-key-that-is-long-enough-for-hs256"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["EMAIL_ENABLED"] = "false"
os.environ["TIMEZONE"] = "UTC"

import uuid  # noqa: E402
from datetime import date, datetime, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from leaseledger.core.clock import FixedClock  # noqa: E402
from leaseledger.core.database import Base  # noqa: E402
from leaseledger.models import audit, media, rental  # noqa: E402,F401  (register tables)
from leaseledger.models.enums import Role  # noqa: E402
from leaseledger.models.property import Property, PropertyUser, Unit  # noqa: E402
from leaseledger.models.user import User  # noqa: E402
from leaseledger.schemas.lease import LeaseCreate, ScheduleSpec  # noqa: E402
from leaseledger.services.access import Principal  # noqa: E402
from leaseledger.services.leases import LeaseRegistry  # noqa: E402
from leaseledger.services.notifications import Notification, Notifier  # noqa: E402
from leaseledger.services.storage import LocalObjectStorage  # noqa: E402
from leaseledger.services.unit_of_work import UnitOfWork  # noqa: E402


class RecordingNotifier(Notifier):
    """Keeps every notification handed over after a commit."""

    def __init__(self):
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def kinds(self) -> list[str]:
        return [n.kind for n in self.sent]


# ── Infrastructure ───────────────────────────────────────────────────────────

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'leaseledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 2, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(root=str(tmp_path / "uploads"), base_url="http://testserver")


@pytest.fixture
def uow(db, notifier):
    return UnitOfWork(db, notifier, attempts=5, base_delay=0.0)


# ── Seed data ────────────────────────────────────────────────────────────────

def principal_for(user: User) -> Principal:
    return Principal(id=user.id, role=Role(user.role), is_active=user.is_active, email=user.email)


class Seeder:
    def __init__(self, session):
        self.session = session

    async def user(self, role: Role, name: str | None = None, is_active: bool = True) -> User:
        name = name or f"{role.value}-{uuid.uuid4().hex[:6]}"
        user = User(
            id=uuid.uuid4(),
            email=f"{name}@example.com",
            full_name=name.title(),
            role=role.value,
            is_active=is_active,
        )
        self.session.add(user)
        await self.session.commit()
        return user

    async def property(self, name: str = "Maple Court") -> Property:
        prop = Property(id=uuid.uuid4(), name=name, city="Springfield", is_active=True)
        self.session.add(prop)
        await self.session.commit()
        return prop

    async def unit(self, prop: Property, label: str = "1A") -> Unit:
        unit = Unit(id=uuid.uuid4(), property_id=prop.id, unit_label=label)
        self.session.add(unit)
        await self.session.commit()
        return unit

    async def associate(self, user: User, prop: Property, roles: list[Role],
                        unit: Unit | None = None) -> PropertyUser:
        assoc = PropertyUser(
            id=uuid.uuid4(),
            user_id=user.id,
            property_id=prop.id,
            unit_id=unit.id if unit else None,
            roles=[r.value for r in roles],
            is_tenant=Role.TENANT in roles,
            is_active=True,
        )
        self.session.add(assoc)
        await self.session.commit()
        return assoc


@pytest.fixture
def seeder(db):
    return Seeder(db)


@pytest.fixture
async def world(seeder):
    """Admin, a landlord of Maple Court, a tenant of unit 1A, and an unrelated
    landlord who manages a different property."""
    prop = await seeder.property()
    unit = await seeder.unit(prop, "1A")
    spare_unit = await seeder.unit(prop, "2B")
    other_prop = await seeder.property("Birch House")

    admin = await seeder.user(Role.ADMIN, "admin")
    landlord = await seeder.user(Role.LANDLORD, "landlord")
    tenant = await seeder.user(Role.TENANT, "tenant")
    outsider = await seeder.user(Role.LANDLORD, "outsider")
    vendor = await seeder.user(Role.VENDOR, "vendor")

    await seeder.associate(landlord, prop, [Role.LANDLORD])
    await seeder.associate(tenant, prop, [Role.TENANT], unit)
    await seeder.associate(outsider, other_prop, [Role.LANDLORD])

    return SimpleNamespace(
        prop=prop,
        unit=unit,
        spare_unit=spare_unit,
        other_prop=other_prop,
        admin=admin,
        landlord=landlord,
        tenant=tenant,
        outsider=outsider,
        vendor=vendor,
        p_admin=principal_for(admin),
        p_landlord=principal_for(landlord),
        p_tenant=principal_for(tenant),
        p_outsider=principal_for(outsider),
        p_vendor=principal_for(vendor),
    )


@pytest.fixture
def lease_payload(world):
    """Builds the monthly lease used across scenarios: 2024, 1500/month, due on the 1st."""
    def build(**overrides) -> LeaseCreate:
        data = dict(
            property_id=world.prop.id,
            unit_id=world.unit.id,
            tenant_id=world.tenant.id,
            start_date=date(2024, 1, 1),
            end_date=date(2024, 12, 31),
            monthly_rent=Decimal("1500.00"),
            currency="USD",
            payment_due_day=1,
        )
        data.update(overrides)
        return LeaseCreate(**data)
    return build


@pytest.fixture
def create_lease(uow, clock, world, lease_payload):
    """Create a lease through the registry, with a monthly schedule by default."""
    async def create(principal: Principal | None = None, with_schedule: bool = True, **overrides):
        registry = LeaseRegistry(uow, clock)
        if with_schedule and "schedule" not in overrides:
            overrides["schedule"] = ScheduleSpec(amount=overrides.get("monthly_rent", Decimal("1500.00")))
        payload = lease_payload(**overrides)
        return await uow.run(lambda: registry.create(principal or world.p_landlord, payload))
    return create
