"""
Tests for the lease registry: creation rules, unit overlap, status
transitions, deletion guards, renewal notices, the expiry sweep, tenant
association release, amendments and document downloads.
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select

from leaseledger.core.config import settings
from leaseledger.core.errors import (
    AccessDenied,
    DependencyBlocked,
    NotFound,
    StateConflict,
    ValidationFailed,
)
from leaseledger.models.audit import AuditEntry
from leaseledger.models.enums import LeaseStatus, RentStatus, Role
from leaseledger.models.property import PropertyUser
from leaseledger.models.rental import RentRecord, RentSchedule
from leaseledger.schemas.lease import LeaseAmendmentCreate, LeaseUpdate, ScheduleSpec
from leaseledger.schemas.rent import PaymentCreate, RentRecordCreate
from leaseledger.services.leases import LeaseRegistry
from leaseledger.services.ledger import RentLedger
from leaseledger.services.storage import IncomingFile


@pytest.fixture
def registry(uow, clock, storage):
    return LeaseRegistry(uow, clock, storage=storage)


@pytest.fixture
def ledger(uow, clock, storage):
    return RentLedger(uow, clock, storage=storage)


async def _audit(db, action: str) -> list[AuditEntry]:
    result = await db.execute(select(AuditEntry).where(AuditEntry.action == action))
    return list(result.scalars().all())


# ── Create ───────────────────────────────────────────────────────────────────

class TestCreate:
    async def test_creates_lease_with_schedule(self, db, create_lease, world, notifier):
        lease = await create_lease()
        assert lease.status == LeaseStatus.ACTIVE.value
        assert lease.monthly_rent == Decimal("1500.00")
        assert lease.created_by == world.landlord.id

        schedule = await db.scalar(select(RentSchedule).where(RentSchedule.lease_id == lease.id))
        assert schedule.is_active
        assert schedule.day_of_cycle == 1
        assert schedule.anchor_date == date(2024, 1, 1)
        assert schedule.currency == "USD"

        assert len(await _audit(db, "lease.create")) == 1
        assert len(await _audit(db, "rent_schedule.create")) == 1
        assert notifier.kinds() == ["lease.status_changed"]

    async def test_requires_tenant_association(self, create_lease, world):
        with pytest.raises(ValidationFailed):
            await create_lease(unit_id=world.spare_unit.id)

    async def test_create_association_in_same_transaction(self, db, create_lease, world):
        lease = await create_lease(unit_id=world.spare_unit.id, create_association=True)
        assoc = await db.scalar(
            select(PropertyUser).where(
                PropertyUser.unit_id == world.spare_unit.id,
                PropertyUser.user_id == world.tenant.id,
            )
        )
        assert assoc is not None and assoc.is_tenant
        assert lease.unit_id == world.spare_unit.id

    async def test_unit_must_belong_to_property(self, create_lease, world):
        with pytest.raises(ValidationFailed):
            await create_lease(property_id=world.other_prop.id, principal=world.p_admin)

    async def test_schedule_currency_must_match(self, create_lease):
        with pytest.raises(ValidationFailed):
            await create_lease(schedule=ScheduleSpec(amount=Decimal("1500.00"), currency="EUR"))

    async def test_cannot_create_terminal_lease(self, create_lease):
        with pytest.raises(ValidationFailed):
            await create_lease(status=LeaseStatus.EXPIRED, with_schedule=False)

    async def test_outsider_gets_concealed_denial(self, create_lease, world):
        with pytest.raises(AccessDenied) as exc:
            await create_lease(principal=world.p_outsider)
        assert exc.value.conceal

    async def test_overlap_rejected(self, create_lease):
        await create_lease()
        with pytest.raises(StateConflict):
            await create_lease(start_date=date(2024, 6, 1), end_date=date(2025, 5, 31))

    async def test_back_to_back_leases_allowed(self, create_lease):
        await create_lease(end_date=date(2024, 6, 30))
        lease = await create_lease(start_date=date(2024, 7, 1), end_date=date(2025, 6, 30))
        assert lease.start_date == date(2024, 7, 1)


# ── Queries ──────────────────────────────────────────────────────────────────

class TestQueries:
    async def test_list_is_scoped(self, registry, create_lease, world):
        lease = await create_lease()
        items, total = await registry.list_leases(world.p_landlord)
        assert total == 1 and items[0].id == lease.id
        items, total = await registry.list_leases(world.p_tenant)
        assert total == 1
        items, total = await registry.list_leases(world.p_outsider)
        assert total == 0 and items == []

    async def test_get_outside_scope_is_concealed(self, registry, create_lease, world):
        lease = await create_lease()
        with pytest.raises(AccessDenied) as exc:
            await registry.get(world.p_outsider, lease.id)
        assert exc.value.conceal

    async def test_expiring_within_horizon(self, registry, create_lease, world):
        soon = await create_lease(end_date=date(2024, 3, 31))
        await create_lease(unit_id=world.spare_unit.id, create_association=True)
        items = await registry.expiring(world.p_landlord, 90)
        assert [lease.id for lease in items] == [soon.id]


# ── Transitions ──────────────────────────────────────────────────────────────

class TestTransitions:
    async def test_pending_renewal_then_renewed(self, db, uow, registry, create_lease, world):
        lease = await create_lease()
        await uow.run(lambda: registry.update(
            world.p_landlord, lease.id, LeaseUpdate(status=LeaseStatus.PENDING_RENEWAL)
        ))
        lease = await uow.run(lambda: registry.update(
            world.p_landlord, lease.id, LeaseUpdate(status=LeaseStatus.RENEWED)
        ))
        assert lease.status == LeaseStatus.RENEWED.value
        schedule = await db.scalar(select(RentSchedule).where(RentSchedule.lease_id == lease.id))
        assert not schedule.is_active

    async def test_active_cannot_jump_to_renewed(self, uow, registry, create_lease, world):
        lease = await create_lease()
        with pytest.raises(StateConflict):
            await uow.run(lambda: registry.update(
                world.p_landlord, lease.id, LeaseUpdate(status=LeaseStatus.RENEWED)
            ))

    async def test_terminate_records_who_and_why(self, uow, registry, create_lease, world, clock, notifier):
        lease = await create_lease()
        lease = await uow.run(lambda: registry.update(
            world.p_landlord, lease.id,
            LeaseUpdate(status=LeaseStatus.TERMINATED, termination_reason="Tenant moved out"),
        ))
        assert lease.status == LeaseStatus.TERMINATED.value
        assert lease.terminated_by == world.landlord.id
        assert lease.terminated_at == clock.now()
        assert lease.termination_reason == "Tenant moved out"
        assert notifier.kinds().count("lease.status_changed") == 2

    async def test_terminal_lease_is_frozen(self, uow, registry, create_lease, world):
        lease = await create_lease()
        await uow.run(lambda: registry.update(
            world.p_landlord, lease.id, LeaseUpdate(status=LeaseStatus.TERMINATED)
        ))
        with pytest.raises(StateConflict):
            await uow.run(lambda: registry.update(world.p_landlord, lease.id, LeaseUpdate(terms="x")))

    async def test_extending_into_another_lease_conflicts(self, uow, registry, create_lease, world):
        first = await create_lease(end_date=date(2024, 6, 30))
        await create_lease(start_date=date(2024, 7, 1), end_date=date(2025, 6, 30))
        with pytest.raises(StateConflict):
            await uow.run(lambda: registry.update(
                world.p_landlord, first.id, LeaseUpdate(end_date=date(2024, 9, 30))
            ))

    async def test_tenant_cannot_update(self, uow, registry, create_lease, world):
        lease = await create_lease()
        with pytest.raises(AccessDenied) as exc:
            await uow.run(lambda: registry.update(world.p_tenant, lease.id, LeaseUpdate(terms="mine")))
        assert not exc.value.conceal


# ── Delete ───────────────────────────────────────────────────────────────────

class TestDelete:
    async def test_blocked_by_payments(self, uow, registry, ledger, create_lease, world):
        lease = await create_lease()
        record = await uow.run(lambda: ledger.create(world.p_landlord, RentRecordCreate(
            lease_id=lease.id, billing_period="2024-02", due_date=date(2024, 2, 1),
            amount_due=Decimal("1500.00"),
        )))
        await uow.run(lambda: ledger.record_payment(world.p_landlord, record.id, PaymentCreate(
            amount=Decimal("1500.00"), payment_date=date(2024, 2, 1),
        )))
        assert record.status == RentStatus.PAID.value

        with pytest.raises(DependencyBlocked):
            await uow.run(lambda: registry.delete(world.p_landlord, lease.id))

    async def test_soft_deletes_lease_and_records(self, db, uow, registry, ledger, create_lease, world):
        lease = await create_lease()
        record = await uow.run(lambda: ledger.create(world.p_landlord, RentRecordCreate(
            lease_id=lease.id, billing_period="2024-02", due_date=date(2024, 2, 1),
            amount_due=Decimal("1500.00"),
        )))
        await uow.run(lambda: registry.delete(world.p_landlord, lease.id))

        assert lease.is_deleted
        stored = await db.get(RentRecord, record.id)
        assert stored.is_deleted
        schedule = await db.scalar(select(RentSchedule).where(RentSchedule.lease_id == lease.id))
        assert not schedule.is_active
        with pytest.raises(NotFound):
            await registry.get(world.p_landlord, lease.id)
        assert len(await _audit(db, "lease.delete")) == 1


# ── Renewal notice and expiry ────────────────────────────────────────────────

class TestRenewalAndExpiry:
    async def test_mark_renewal_notice_is_idempotent(self, db, uow, registry, create_lease, world):
        lease = await create_lease()
        await uow.run(lambda: registry.mark_renewal_notice_sent(world.p_landlord, lease.id))
        lease = await uow.run(lambda: registry.mark_renewal_notice_sent(world.p_landlord, lease.id))
        assert lease.renewal_notice_sent
        assert lease.last_renewal_notice_at is not None
        assert len(await _audit(db, "lease.mark_renewal_notice_sent")) == 1

    async def test_expire_sweep(self, db, uow, registry, create_lease, world, notifier):
        ended = await create_lease(start_date=date(2023, 2, 1), end_date=date(2024, 1, 31))
        current = await create_lease(start_date=date(2024, 2, 1), end_date=date(2025, 1, 31))

        expired = await uow.run(lambda: registry.expire_ended_leases())
        assert expired == 1
        await db.refresh(ended)
        await db.refresh(current)
        assert ended.status == LeaseStatus.EXPIRED.value
        assert current.status == LeaseStatus.ACTIVE.value
        entries = await _audit(db, "lease.expire")
        assert len(entries) == 1 and entries[0].actor_kind == "system"
        assert notifier.sent[-1].data["new_status"] == "expired"

        assert await uow.run(lambda: registry.expire_ended_leases()) == 0


# ── Tenant association lifecycle ─────────────────────────────────────────────

async def _tenant_links(db, unit_id) -> list[PropertyUser]:
    result = await db.execute(
        select(PropertyUser)
        .where(PropertyUser.unit_id == unit_id, PropertyUser.is_tenant == True)  # noqa: E712
        .order_by(PropertyUser.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestTenantRelease:
    async def test_terminated_unit_can_be_let_again(self, db, uow, registry, create_lease, seeder, world):
        newcomer = await seeder.user(Role.TENANT, "newcomer")
        unit_id = world.unit.id
        lease = await create_lease()
        await uow.run(lambda: registry.update(
            world.p_landlord, lease.id, LeaseUpdate(status=LeaseStatus.TERMINATED)
        ))
        (entry,) = await _audit(db, "lease.update")
        assert entry.after["released_association_id"]

        nxt = await create_lease(
            tenant_id=newcomer.id, start_date=date(2024, 3, 1), end_date=date(2025, 2, 28),
            create_association=True,
        )
        assert nxt.tenant_id == newcomer.id
        active = [(a.user_id, a.is_active) for a in await _tenant_links(db, unit_id)]
        assert active == [(world.tenant.id, False), (newcomer.id, True)]

    async def test_expired_unit_can_be_let_again(self, db, uow, registry, create_lease, seeder, world):
        newcomer = await seeder.user(Role.TENANT, "newcomer")
        await create_lease(start_date=date(2023, 2, 1), end_date=date(2024, 1, 31))
        assert await uow.run(lambda: registry.expire_ended_leases()) == 1

        nxt = await create_lease(
            tenant_id=newcomer.id, start_date=date(2024, 2, 1), end_date=date(2025, 1, 31),
            create_association=True,
        )
        assert nxt.status == LeaseStatus.ACTIVE.value

    async def test_deleted_lease_releases_unit(self, db, uow, registry, create_lease, world):
        unit_id = world.unit.id
        lease = await create_lease()
        await uow.run(lambda: registry.delete(world.p_landlord, lease.id))
        assert [a.is_active for a in await _tenant_links(db, unit_id)] == [False]

    async def test_kept_while_another_live_lease_needs_it(self, db, uow, registry, create_lease, world):
        unit_id = world.unit.id
        first = await create_lease(end_date=date(2024, 6, 30))
        await create_lease(start_date=date(2024, 7, 1), end_date=date(2025, 6, 30))
        await uow.run(lambda: registry.update(
            world.p_landlord, first.id, LeaseUpdate(status=LeaseStatus.TERMINATED)
        ))
        assert [a.is_active for a in await _tenant_links(db, unit_id)] == [True]

    async def test_newcomer_blocked_while_tenant_is_live(self, create_lease, seeder):
        newcomer = await seeder.user(Role.TENANT, "newcomer")
        await create_lease(end_date=date(2024, 6, 30))
        with pytest.raises(StateConflict):
            await create_lease(
                tenant_id=newcomer.id, start_date=date(2024, 7, 1), end_date=date(2025, 6, 30),
                create_association=True,
            )


# ── Amendments and documents ─────────────────────────────────────────────────

def _doc(name: str = "addendum.pdf", body: bytes = b"%PDF-1.4 addendum") -> IncomingFile:
    return IncomingFile(filename=name, content_type="application/pdf", data=body)


class TestAmendments:
    async def test_amendment_is_appended_and_audited(self, db, uow, registry, notifier, create_lease, world):
        lease = await create_lease()
        doc = await uow.run(lambda: registry.attach_document(world.p_landlord, lease.id, _doc()))
        lease = await uow.run(lambda: registry.add_amendment(
            world.p_landlord, lease.id,
            LeaseAmendmentCreate(description="  Pets allowed  ", document_id=doc.id),
        ))
        (amendment,) = lease.amendments
        assert amendment["description"] == "Pets allowed"
        assert amendment["document_id"] == str(doc.id)
        assert amendment["amendment_date"] == "2024-02-10"
        assert amendment["created_by"] == str(world.landlord.id)

        lease = await uow.run(lambda: registry.add_amendment(
            world.p_landlord, lease.id, LeaseAmendmentCreate(description="Parking bay 4"),
        ))
        assert [a["description"] for a in lease.amendments] == ["Pets allowed", "Parking bay 4"]
        assert lease.amendments[1]["document_id"] is None
        entries = await _audit(db, "lease.add_amendment")
        assert len(entries) == 2
        assert sorted(e.after["description"] for e in entries) == ["Parking bay 4", "Pets allowed"]
        amended = [n for n in notifier.sent if n.kind == "lease.amended"]
        assert len(amended) == 2
        assert amended[0].recipient_ids == [str(world.tenant.id)]

    async def test_blank_description_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            LeaseAmendmentCreate(description="   ")

    async def test_document_must_belong_to_the_lease(self, uow, registry, create_lease, world):
        lease_id = (await create_lease()).id
        with pytest.raises(NotFound):
            await uow.run(lambda: registry.add_amendment(
                world.p_landlord, lease_id,
                LeaseAmendmentCreate(description="Side letter", document_id=uuid.uuid4()),
            ))

    async def test_tenant_cannot_amend(self, uow, registry, create_lease, world):
        lease_id = (await create_lease()).id
        with pytest.raises(AccessDenied):
            await uow.run(lambda: registry.add_amendment(
                world.p_tenant, lease_id, LeaseAmendmentCreate(description="Mine now"),
            ))

    async def test_terminal_lease_cannot_be_amended(self, uow, registry, create_lease, world):
        lease_id = (await create_lease()).id
        await uow.run(lambda: registry.update(
            world.p_landlord, lease_id, LeaseUpdate(status=LeaseStatus.TERMINATED)
        ))
        with pytest.raises(StateConflict):
            await uow.run(lambda: registry.add_amendment(
                world.p_landlord, lease_id, LeaseAmendmentCreate(description="Too late"),
            ))


class TestDocumentDownload:
    async def test_tenant_gets_signed_url(self, uow, registry, storage, create_lease, world):
        lease = await create_lease()
        doc = await uow.run(lambda: registry.attach_document(world.p_landlord, lease.id, _doc()))
        url, ttl, media = await registry.download_document(world.p_tenant, lease.id, doc.id)
        assert ttl == settings.signed_url_ttl_seconds
        assert url.startswith("http://testserver/") and "token=" in url
        assert media.filename == "addendum.pdf"
        assert storage.read(media.public_id) == b"%PDF-1.4 addendum"

    async def test_unknown_document_is_not_found(self, registry, create_lease, world):
        lease = await create_lease()
        with pytest.raises(NotFound):
            await registry.download_document(world.p_landlord, lease.id, uuid.uuid4())

    async def test_document_of_another_lease_is_not_found(self, uow, registry, create_lease, world):
        first = await create_lease(end_date=date(2024, 6, 30))
        second = await create_lease(start_date=date(2024, 7, 1), end_date=date(2025, 6, 30))
        doc = await uow.run(lambda: registry.attach_document(world.p_landlord, first.id, _doc()))
        with pytest.raises(NotFound):
            await registry.download_document(world.p_landlord, second.id, doc.id)

    async def test_outsider_cannot_see_the_lease(self, uow, registry, create_lease, world):
        lease = await create_lease()
        doc = await uow.run(lambda: registry.attach_document(world.p_landlord, lease.id, _doc()))
        with pytest.raises(NotFound):
            await registry.download_document(world.p_outsider, lease.id, doc.id)
