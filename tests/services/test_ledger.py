"""
Tests for the rent ledger: payments and their concurrency guarantees,
waive / cancel rules, record edits, list and history queries, the lease
rent report, payment proofs and the overdue sweep.
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from leaseledger.core.errors import (
    AccessDenied,
    DependencyBlocked,
    DuplicateRecord,
    NotFound,
    StateConflict,
    ValidationFailed,
)
from leaseledger.models.audit import AuditEntry
from leaseledger.models.enums import RentStatus
from leaseledger.models.media import Media
from leaseledger.models.rental import RentRecord
from leaseledger.schemas.rent import PaymentCreate, RentRecordCreate, RentRecordUpdate
from leaseledger.services.documents import PdfDocumentGenerator
from leaseledger.services.ledger import RentLedger
from leaseledger.services.storage import IncomingFile
from leaseledger.services.unit_of_work import UnitOfWork

D = Decimal


def _pay(amount: str, day: date = date(2024, 2, 2), **kwargs) -> PaymentCreate:
    return PaymentCreate(amount=D(amount), payment_date=day, **kwargs)


def _pdf(name: str = "receipt.pdf", body: bytes = b"%PDF-1.4 receipt") -> IncomingFile:
    return IncomingFile(filename=name, content_type="application/pdf", data=body)


@pytest.fixture
def ledger(uow, clock, storage, db):
    return RentLedger(uow, clock, storage=storage, documents=PdfDocumentGenerator(db, storage))


@pytest.fixture
async def lease(create_lease):
    return await create_lease()


@pytest.fixture
def add_record(uow, ledger, lease, world):
    async def add(period: str = "2024-02", due: date = date(2024, 2, 1), amount: str = "1000.00"):
        return await uow.run(lambda: ledger.create(world.p_landlord, RentRecordCreate(
            lease_id=lease.id, billing_period=period, due_date=due, amount_due=D(amount),
        )))
    return add


# ── Payments ─────────────────────────────────────────────────────────────────

class TestPayments:
    async def test_partial_then_full(self, uow, ledger, add_record, world):
        record = await add_record()
        record = await uow.run(lambda: ledger.record_payment(world.p_tenant, record.id, _pay("400.00")))
        assert record.status == RentStatus.PARTIALLY_PAID.value
        assert record.amount_paid == D("400.00")

        record = await uow.run(lambda: ledger.record_payment(
            world.p_tenant, record.id, _pay("600.00", date(2024, 2, 5)),
        ))
        assert record.status == RentStatus.PAID.value
        assert record.amount_paid == D("1000.00")
        assert [p.sequence for p in record.payments] == [1, 2]
        assert [p.payment_date for p in record.payments] == [date(2024, 2, 2), date(2024, 2, 5)]

    async def test_overpayment_is_clamped(self, uow, ledger, add_record, world):
        record = await add_record()
        record = await uow.run(lambda: ledger.record_payment(world.p_tenant, record.id, _pay("1500.00")))
        assert record.status == RentStatus.PAID.value
        assert record.amount_paid == D("1000.00")
        (payment,) = record.payments
        assert payment.amount == D("1500.00")
        assert payment.credited_excess == D("500.00")

    async def test_concurrent_payments_serialise(self, session_factory, notifier, clock, add_record, world):
        record = await add_record()

        async def pay():
            async with session_factory() as session:
                uow = UnitOfWork(session, notifier, attempts=10, base_delay=0.01)
                ledger = RentLedger(uow, clock)
                await uow.run(lambda: ledger.record_payment(world.p_tenant, record.id, _pay("500.00")))

        await asyncio.gather(pay(), pay())

        async with session_factory() as session:
            stored = await session.get(RentRecord, record.id)
            assert stored.amount_paid == D("1000.00")
            assert stored.status == RentStatus.PAID.value
            assert [p.sequence for p in stored.payments] == [1, 2]
            assert all(p.credited_excess == D("0.00") for p in stored.payments)

    async def test_paid_notification_goes_to_managers(self, uow, ledger, add_record, world, notifier):
        record = await add_record()
        await uow.run(lambda: ledger.record_payment(world.p_tenant, record.id, _pay("1000.00")))
        note = notifier.sent[-1]
        assert note.kind == "rent.paid"
        assert note.recipient_ids == [str(world.landlord.id)]

    async def test_closed_records_reject_payments(self, uow, ledger, add_record, world):
        record = await add_record()
        await uow.run(lambda: ledger.waive(world.p_landlord, record.id, "hardship"))
        with pytest.raises(StateConflict):
            await uow.run(lambda: ledger.record_payment(world.p_tenant, record.id, _pay("10.00")))

    async def test_currency_must_match(self, uow, ledger, add_record, world):
        record = await add_record()
        with pytest.raises(ValidationFailed):
            await uow.run(lambda: ledger.record_payment(
                world.p_tenant, record.id, _pay("10.00", currency="EUR"),
            ))

    async def test_outsider_cannot_see_record(self, uow, ledger, add_record, world):
        record = await add_record()
        with pytest.raises(AccessDenied) as exc:
            await uow.run(lambda: ledger.record_payment(world.p_outsider, record.id, _pay("10.00")))
        assert exc.value.conceal

    async def test_payment_is_audited(self, db, uow, ledger, add_record, world):
        record = await add_record()
        await uow.run(lambda: ledger.record_payment(world.p_tenant, record.id, _pay("250.00")))
        entry = await db.scalar(
            select(AuditEntry).where(AuditEntry.action == "rent_record.record_payment")
        )
        assert entry.actor_id == world.tenant.id
        assert entry.actor_kind == "user"
        assert entry.before == {"status": "due", "amount_paid": "0.00"}
        assert entry.after["amount_paid"] == "250.00"


# ── Waive and cancel ─────────────────────────────────────────────────────────

class TestWaiveCancel:
    async def test_waive_unpaid(self, uow, ledger, add_record, world):
        record = await add_record()
        record = await uow.run(lambda: ledger.waive(world.p_landlord, record.id, "goodwill"))
        assert record.status == RentStatus.WAIVED.value
        assert record.status_reason == "goodwill"

    async def test_only_admin_waives_after_payment(self, uow, ledger, add_record, world):
        record_id = (await add_record()).id
        await uow.run(lambda: ledger.record_payment(world.p_tenant, record_id, _pay("100.00")))
        with pytest.raises(StateConflict):
            await uow.run(lambda: ledger.waive(world.p_landlord, record_id, "goodwill"))
        # a rollback expires every loaded object
        record = await uow.run(lambda: ledger.waive(world.p_admin, record_id, "goodwill"))
        assert record.status == RentStatus.WAIVED.value
        assert record.amount_paid == D("100.00")

    async def test_cancel_requires_no_payments(self, uow, ledger, add_record, world):
        record = await add_record()
        await uow.run(lambda: ledger.record_payment(world.p_tenant, record.id, _pay("100.00")))
        with pytest.raises(StateConflict):
            await uow.run(lambda: ledger.cancel(world.p_admin, record.id, "mistake"))

    async def test_cancel_unpaid(self, uow, ledger, add_record, world):
        record = await add_record()
        record = await uow.run(lambda: ledger.cancel(world.p_landlord, record.id, "duplicate"))
        assert record.status == RentStatus.CANCELLED.value
        with pytest.raises(StateConflict):
            await uow.run(lambda: ledger.waive(world.p_landlord, record.id, "again"))

    async def test_tenant_cannot_waive(self, uow, ledger, add_record, world):
        record = await add_record()
        with pytest.raises(AccessDenied) as exc:
            await uow.run(lambda: ledger.waive(world.p_tenant, record.id, "please"))
        assert not exc.value.conceal


# ── Create, update, delete ───────────────────────────────────────────────────

class TestRecordEdits:
    async def test_duplicate_period(self, add_record):
        await add_record()
        with pytest.raises(DuplicateRecord):
            await add_record()

    async def test_malformed_billing_period(self, add_record):
        with pytest.raises(ValidationFailed):
            await add_record(period="2024-13")

    async def test_update_amount_while_due(self, uow, ledger, add_record, world):
        record = await add_record()
        record = await uow.run(lambda: ledger.update(
            world.p_landlord, record.id, RentRecordUpdate(amount_due=D("1100.00"), notes="adjusted"),
        ))
        assert record.amount_due == D("1100.00")
        assert record.notes == "adjusted"

    async def test_amount_frozen_after_payment(self, uow, ledger, add_record, world):
        record = await add_record()
        await uow.run(lambda: ledger.record_payment(world.p_tenant, record.id, _pay("100.00")))
        with pytest.raises(StateConflict):
            await uow.run(lambda: ledger.update(
                world.p_landlord, record.id, RentRecordUpdate(amount_due=D("900.00")),
            ))

    async def test_delete(self, uow, ledger, add_record, world):
        record = await add_record()
        await uow.run(lambda: ledger.delete(world.p_landlord, record.id))
        with pytest.raises(NotFound):
            await ledger.get(world.p_landlord, record.id)

    async def test_delete_blocked_by_payments(self, uow, ledger, add_record, world):
        record = await add_record()
        await uow.run(lambda: ledger.record_payment(world.p_tenant, record.id, _pay("100.00")))
        with pytest.raises(DependencyBlocked):
            await uow.run(lambda: ledger.delete(world.p_landlord, record.id))


# ── Queries ──────────────────────────────────────────────────────────────────

class TestQueries:
    async def _seed(self, add_record):
        return [
            await add_record(f"2024-{m:02d}", date(2024, m, 1), "1500.00")
            for m in range(1, 6)
        ]

    async def test_overdue_is_derived(self, ledger, add_record, world):
        jan, feb, mar, apr, may = await self._seed(add_record)
        record = await ledger.get(world.p_tenant, feb.id)
        assert record.status == RentStatus.DUE.value

        overdue, total = await ledger.list_records(world.p_landlord, status=RentStatus.OVERDUE)
        assert total == 2
        assert {r.id for r in overdue} == {jan.id, feb.id}
        due, total = await ledger.list_records(world.p_landlord, status=RentStatus.DUE)
        assert {r.id for r in due} == {mar.id, apr.id, may.id}

    async def test_list_paging_and_sort(self, ledger, add_record, world):
        await self._seed(add_record)
        items, total = await ledger.list_records(world.p_landlord, sort="due_date", page=2, limit=2)
        assert total == 5
        assert [r.billing_period for r in items] == ["2024-03", "2024-04"]
        with pytest.raises(ValidationFailed):
            await ledger.list_records(world.p_landlord, sort="tenant")

    async def test_list_scope(self, ledger, add_record, world):
        await self._seed(add_record)
        _, total = await ledger.list_records(world.p_tenant)
        assert total == 5
        _, total = await ledger.list_records(world.p_outsider)
        assert total == 0

    async def test_upcoming(self, ledger, add_record, world):
        await self._seed(add_record)
        items = await ledger.upcoming(world.p_tenant, 30)
        assert [r.billing_period for r in items] == ["2024-03"]

    async def test_history_pages_with_cursor(self, ledger, add_record, world):
        await self._seed(add_record)
        groups, cursor = await ledger.history(world.p_landlord, limit=2)
        assert [period for period, _ in groups] == ["2024-05", "2024-04"]
        assert cursor is not None

        groups, cursor = await ledger.history(world.p_landlord, cursor=cursor, limit=2)
        assert [period for period, _ in groups] == ["2024-03", "2024-02"]

        groups, cursor = await ledger.history(world.p_landlord, cursor=cursor, limit=2)
        assert [period for period, _ in groups] == ["2024-01"]
        assert cursor is None

    async def test_history_rejects_bad_cursor(self, ledger, world):
        with pytest.raises(ValidationFailed):
            await ledger.history(world.p_landlord, cursor="yesterday")

    async def test_lease_rent_report(self, uow, ledger, lease, add_record, world):
        jan, feb, mar, apr, _ = await self._seed(add_record)
        await uow.run(lambda: ledger.record_payment(world.p_tenant, jan.id, _pay("1500.00")))
        await uow.run(lambda: ledger.record_payment(world.p_tenant, feb.id, _pay("500.00")))
        await uow.run(lambda: ledger.waive(world.p_landlord, apr.id, "repairs"))

        report = await ledger.lease_rent_report(world.p_tenant, lease.id, end=date(2024, 4, 30))
        assert report["total_due"] == D("4500.00")
        assert report["total_collected"] == D("2000.00")
        assert report["outstanding"] == D("2500.00")
        assert {k: v["count"] for k, v in report["status_summary"].items()} == {
            "paid": 1, "overdue": 1, "due": 1, "waived": 1,
        }
        assert len(report["records"]) == 4


# ── Proofs and documents ─────────────────────────────────────────────────────

class TestProofs:
    async def test_payment_with_proof(self, uow, ledger, add_record, world, storage):
        record = await add_record()
        record = await uow.run(lambda: ledger.record_payment(
            world.p_tenant, record.id, _pay("1000.00"), _pdf(),
        ))
        assert record.payment_proof_id is not None
        assert record.payments[0].proof_id == record.payment_proof_id

    async def test_replace_and_download(self, db, uow, ledger, add_record, world, storage):
        record = await add_record()
        await uow.run(lambda: ledger.attach_proof(world.p_tenant, record.id, _pdf(body=b"first")))
        first = await db.get(Media, record.payment_proof_id)
        assert storage.read(first.public_id) == b"first"

        await uow.run(lambda: ledger.attach_proof(world.p_tenant, record.id, _pdf(body=b"second")))
        second = await db.get(Media, record.payment_proof_id)
        assert storage.read(second.public_id) == b"second"
        assert storage.read(first.public_id) is None

        url, ttl = await ledger.download_proof(world.p_tenant, record.id)
        assert url.startswith("http://testserver/api/v1/media/")
        assert "?token=" in url
        assert ttl > 0

    async def test_detach(self, uow, ledger, add_record, world):
        record = await add_record()
        await uow.run(lambda: ledger.attach_proof(world.p_tenant, record.id, _pdf()))
        record = await uow.run(lambda: ledger.detach_proof(world.p_landlord, record.id))
        assert record.payment_proof_id is None
        with pytest.raises(NotFound):
            await ledger.download_proof(world.p_tenant, record.id)

    async def test_rent_report_pdf(self, uow, ledger, lease, add_record, world, storage):
        await add_record()
        media = await uow.run(lambda: ledger.rent_report_pdf(world.p_landlord, lease.id))
        assert media.document_type == "rent_report"
        assert storage.read(media.public_id).startswith(b"%PDF")


# ── Overdue sweep ────────────────────────────────────────────────────────────

class TestOverdueSweep:
    async def test_flags_each_record_once(self, uow, ledger, add_record, world, notifier):
        overdue = await add_record("2024-02", date(2024, 2, 1))
        await add_record("2024-03", date(2024, 3, 1))

        assert await uow.run(lambda: ledger.sweep_overdue()) == 1
        assert overdue.overdue_notified_at is not None
        note = notifier.sent[-1]
        assert note.kind == "rent.overdue"
        assert set(note.recipient_ids) == {str(world.tenant.id), str(world.landlord.id)}

        assert await uow.run(lambda: ledger.sweep_overdue()) == 0
