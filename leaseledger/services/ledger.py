"""
Rent ledger: the rent record state machine.

    due ──► partially_paid ──► paid
     │            │
     ├─ waive ────┴─► waived      (admin only once money has been paid)
     └─ cancel ─────► cancelled   (only while nothing has been paid)

``overdue`` is never written: it is derived at read time for open records
whose due date has passed (see ``services.status``).

Payments on one record are serialised by the row lock plus the record's
version column; a lost race surfaces as ``StaleDataError`` and the unit of
work replays the whole payment against the fresh row.
"""

import logging
import re
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError

from leaseledger.core.clock import Clock
from leaseledger.core.config import settings
from leaseledger.core.errors import (
    DependencyBlocked,
    DuplicateRecord,
    NotFound,
    StateConflict,
    ValidationFailed,
)
from leaseledger.models.enums import OPEN_RENT_STATUSES, DocumentType, Role, RentStatus
from leaseledger.models.media import Media
from leaseledger.models.rental import Lease, RentPayment, RentRecord
from leaseledger.schemas.rent import PaymentCreate, RentRecordCreate, RentRecordUpdate
from leaseledger.services.access import AccessResolver, Intent, Principal, Target
from leaseledger.services.audit import json_safe, snapshot
from leaseledger.services.documents import DocumentGenerator
from leaseledger.services.notifications import Notification, property_manager_ids
from leaseledger.services.status import apply_payment, derive_status, effective_status, money
from leaseledger.services.storage import IncomingFile, ObjectStorage, discard_object, store_media
from leaseledger.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

RECORD_FIELDS = (
    "lease_id", "billing_period", "due_date", "amount_due", "amount_paid", "currency",
    "status", "payment_proof_id", "notes", "status_reason", "is_deleted",
)

BILLING_PERIOD_RE = re.compile(r"^\d{4}(-(0[1-9]|1[0-2])|-Q[1-4]|-W(0[1-9]|[1-4]\d|5[0-3]))?$")

SORTS = {
    "due_date": (RentRecord.due_date.asc(), RentRecord.id.asc()),
    "-due_date": (RentRecord.due_date.desc(), RentRecord.id.desc()),
    "amount_due": (RentRecord.amount_due.asc(), RentRecord.id.asc()),
    "-amount_due": (RentRecord.amount_due.desc(), RentRecord.id.desc()),
    "created_at": (RentRecord.created_at.asc(), RentRecord.id.asc()),
    "-created_at": (RentRecord.created_at.desc(), RentRecord.id.desc()),
}

HISTORY_BATCH = 100
_OPEN = [s.value for s in OPEN_RENT_STATUSES]


def encode_cursor(record: RentRecord) -> str:
    return f"{record.due_date.isoformat()}_{record.id.hex}"


def decode_cursor(cursor: str) -> tuple[date, uuid.UUID]:
    try:
        day, hex_id = cursor.split("_", 1)
        return date.fromisoformat(day), uuid.UUID(hex=hex_id)
    except ValueError as e:
        raise ValidationFailed(
            "Invalid history cursor", details=[{"field": "cursor", "message": "malformed cursor"}]
        ) from e


class RentLedger:
    def __init__(self, uow: UnitOfWork, clock: Clock, *,
                 storage: ObjectStorage | None = None,
                 documents: DocumentGenerator | None = None):
        self.uow = uow
        self.db = uow.db
        self.clock = clock
        self.storage = storage
        self.documents = documents
        self.access = AccessResolver(self.db)

    # ─── Helpers ─────────────────────────────────────────────────────────

    async def _load(self, record_id: uuid.UUID, *, for_update: bool = False) -> tuple[RentRecord, Lease]:
        stmt = (
            select(RentRecord, Lease)
            .join(Lease, Lease.id == RentRecord.lease_id)
            .where(
                RentRecord.id == record_id,
                RentRecord.is_deleted == False,  # noqa: E712
                Lease.is_deleted == False,  # noqa: E712
            )
        )
        if for_update:
            stmt = stmt.with_for_update(of=RentRecord).execution_options(populate_existing=True)
        row = (await self.db.execute(stmt)).first()
        if not row:
            raise NotFound("Rent record not found")
        return row[0], row[1]

    async def _lease(self, lease_id: uuid.UUID) -> Lease:
        lease = await self.db.scalar(
            select(Lease).where(Lease.id == lease_id, Lease.is_deleted == False)  # noqa: E712
        )
        if not lease:
            raise NotFound("Lease not found")
        return lease

    def _stage_upload(self, incoming: IncomingFile, folder: str, principal: Principal,
                      tags: list[str]) -> Media:
        media = store_media(
            self.db, self.storage, incoming,
            folder=folder, uploaded_by=principal.id, tags=tags,
        )
        self.uow.on_rollback(lambda: discard_object(self.storage, media.public_id))
        return media

    async def _replace_proof(self, record: RentRecord, media: Media) -> None:
        """Point the record at ``media``; the old object goes once committed."""
        if record.payment_proof_id and record.payment_proof_id != media.id:
            old = await self.db.get(Media, record.payment_proof_id)
            if old is not None:
                public_id = old.public_id
                self.uow.after_commit(lambda: discard_object(self.storage, public_id))
        record.payment_proof_id = media.id

    # ─── Queries ─────────────────────────────────────────────────────────

    async def get(self, principal: Principal, record_id: uuid.UUID) -> RentRecord:
        record, lease = await self._load(record_id)
        await self.access.authorize(principal, Intent.READ, Target.rent_record(record.id, lease))
        return record

    async def list_records(
        self,
        principal: Principal,
        *,
        status: RentStatus | None = None,
        lease_id: uuid.UUID | None = None,
        property_id: uuid.UUID | None = None,
        unit_id: uuid.UUID | None = None,
        tenant_id: uuid.UUID | None = None,
        billing_period: str | None = None,
        due_from: date | None = None,
        due_to: date | None = None,
        sort: str = "-due_date",
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[RentRecord], int]:
        if sort not in SORTS:
            raise ValidationFailed(
                f"Unknown sort '{sort}'",
                details=[{"field": "sort", "message": f"one of {', '.join(SORTS)}"}],
            )
        scope = await self.access.scope(principal)
        today = self.clock.today()

        stmt = (
            select(RentRecord)
            .join(Lease, Lease.id == RentRecord.lease_id)
            .where(RentRecord.is_deleted == False, Lease.is_deleted == False)  # noqa: E712
        )
        clause = scope.lease_clause()
        if clause is not None:
            stmt = stmt.where(clause)

        if status:
            status = RentStatus(status)
            if status == RentStatus.OVERDUE:
                stmt = stmt.where(RentRecord.status.in_(_OPEN), RentRecord.due_date < today)
            elif status in OPEN_RENT_STATUSES:
                # Open statuses are shown as overdue once past due
                stmt = stmt.where(RentRecord.status == status.value, RentRecord.due_date >= today)
            else:
                stmt = stmt.where(RentRecord.status == status.value)
        if lease_id:
            stmt = stmt.where(RentRecord.lease_id == lease_id)
        if property_id:
            stmt = stmt.where(Lease.property_id == property_id)
        if unit_id:
            stmt = stmt.where(Lease.unit_id == unit_id)
        if tenant_id:
            stmt = stmt.where(Lease.tenant_id == tenant_id)
        if billing_period:
            stmt = stmt.where(RentRecord.billing_period == billing_period)
        if due_from:
            stmt = stmt.where(RentRecord.due_date >= due_from)
        if due_to:
            stmt = stmt.where(RentRecord.due_date <= due_to)

        total = await self.db.scalar(select(func.count()).select_from(stmt.subquery()))
        result = await self.db.execute(
            stmt.order_by(*SORTS[sort]).offset((page - 1) * limit).limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def upcoming(self, principal: Principal, horizon_days: int | None = None) -> list[RentRecord]:
        """Open records due within [today, today + horizon], soonest first."""
        horizon = settings.upcoming_rent_horizon_days if horizon_days is None else horizon_days
        scope = await self.access.scope(principal)
        today = self.clock.today()
        stmt = (
            select(RentRecord)
            .join(Lease, Lease.id == RentRecord.lease_id)
            .where(
                RentRecord.is_deleted == False,  # noqa: E712
                Lease.is_deleted == False,  # noqa: E712
                RentRecord.status.in_(_OPEN),
                RentRecord.due_date >= today,
                RentRecord.due_date <= today + timedelta(days=horizon),
            )
        )
        clause = scope.lease_clause()
        if clause is not None:
            stmt = stmt.where(clause)
        result = await self.db.execute(stmt.order_by(RentRecord.due_date.asc(), RentRecord.id))
        return list(result.scalars().all())

    async def iter_history(
        self,
        principal: Principal,
        *,
        lease_id: uuid.UUID | None = None,
        property_id: uuid.UUID | None = None,
        after: tuple[date, uuid.UUID] | None = None,
    ) -> AsyncIterator[RentRecord]:
        """Scoped records by due date descending, fetched in keyset batches.

        Restart from any record by passing its (due_date, id) as ``after``.
        """
        scope = await self.access.scope(principal)
        base = (
            select(RentRecord)
            .join(Lease, Lease.id == RentRecord.lease_id)
            .where(RentRecord.is_deleted == False, Lease.is_deleted == False)  # noqa: E712
        )
        clause = scope.lease_clause()
        if clause is not None:
            base = base.where(clause)
        if lease_id:
            base = base.where(RentRecord.lease_id == lease_id)
        if property_id:
            base = base.where(Lease.property_id == property_id)

        while True:
            stmt = base
            if after is not None:
                due, rid = after
                stmt = stmt.where(or_(
                    RentRecord.due_date < due,
                    and_(RentRecord.due_date == due, RentRecord.id < rid),
                ))
            result = await self.db.execute(
                stmt.order_by(RentRecord.due_date.desc(), RentRecord.id.desc()).limit(HISTORY_BATCH)
            )
            batch = list(result.scalars().all())
            for record in batch:
                yield record
            if len(batch) < HISTORY_BATCH:
                return
            after = (batch[-1].due_date, batch[-1].id)

    async def history(
        self,
        principal: Principal,
        *,
        lease_id: uuid.UUID | None = None,
        property_id: uuid.UUID | None = None,
        cursor: str | None = None,
        limit: int = 50,
    ) -> tuple[list[tuple[str, list[RentRecord]]], str | None]:
        """One page of history grouped by billing period, plus the next cursor."""
        after = decode_cursor(cursor) if cursor else None
        page: list[RentRecord] = []
        has_more = False
        async with aclosing(self.iter_history(
            principal, lease_id=lease_id, property_id=property_id, after=after,
        )) as records:
            async for record in records:
                if len(page) == limit:
                    has_more = True
                    break
                page.append(record)

        groups: dict[str, list[RentRecord]] = {}
        for record in page:
            groups.setdefault(record.billing_period, []).append(record)
        next_cursor = encode_cursor(page[-1]) if has_more and page else None
        return list(groups.items()), next_cursor

    async def lease_rent_report(self, principal: Principal, lease_id: uuid.UUID,
                                start: date | None = None, end: date | None = None) -> dict:
        lease = await self._lease(lease_id)
        await self.access.authorize(principal, Intent.READ, Target.lease(lease))
        if start and end and end < start:
            raise ValidationFailed(
                "end must be on or after start", details=[{"field": "end", "message": "before start"}]
            )

        stmt = select(RentRecord).where(
            RentRecord.lease_id == lease.id,
            RentRecord.is_deleted == False,  # noqa: E712
        )
        if start:
            stmt = stmt.where(RentRecord.due_date >= start)
        if end:
            stmt = stmt.where(RentRecord.due_date <= end)
        records = list((await self.db.execute(
            stmt.order_by(RentRecord.due_date.asc(), RentRecord.id)
        )).scalars().all())

        today = self.clock.today()
        zero = Decimal("0")
        total_due = total_collected = outstanding = zero
        summary: dict[str, dict] = {}
        for record in records:
            status = effective_status(record, today)
            bucket = summary.setdefault(
                status.value, {"count": 0, "amount_due": zero, "amount_paid": zero}
            )
            bucket["count"] += 1
            bucket["amount_due"] += record.amount_due
            bucket["amount_paid"] += record.amount_paid
            total_collected += record.amount_paid
            if status in (RentStatus.WAIVED, RentStatus.CANCELLED):
                continue
            total_due += record.amount_due
            outstanding += max(record.amount_due - record.amount_paid, zero)

        return {
            "lease_id": lease.id,
            "currency": lease.currency,
            "start": start,
            "end": end,
            "total_due": money(total_due),
            "total_collected": money(total_collected),
            "outstanding": money(outstanding),
            "status_summary": summary,
            "records": records,
        }

    # ─── Mutations ───────────────────────────────────────────────────────

    async def create(self, principal: Principal, data: RentRecordCreate) -> RentRecord:
        lease = await self._lease(data.lease_id)
        await self.access.authorize(principal, Intent.MUTATE, Target.rent_record(None, lease))
        if not BILLING_PERIOD_RE.match(data.billing_period):
            raise ValidationFailed(
                "billing_period must look like YYYY-MM, YYYY-Www, YYYY-Qn or YYYY",
                details=[{"field": "billing_period", "message": "not a canonical billing period"}],
            )

        existing = await self.db.scalar(
            select(RentRecord.id).where(
                RentRecord.lease_id == lease.id,
                RentRecord.billing_period == data.billing_period,
            )
        )
        if existing:
            raise DuplicateRecord(
                f"A rent record for {data.billing_period} already exists on this lease",
                details={"rent_record_id": str(existing)},
            )

        amount_due = money(data.amount_due)
        record = RentRecord(
            id=uuid.uuid4(),
            lease_id=lease.id,
            billing_period=data.billing_period,
            due_date=data.due_date,
            amount_due=amount_due,
            amount_paid=Decimal("0.00"),
            currency=lease.currency,
            status=derive_status(amount_due, Decimal("0"), RentStatus.DUE).value,
            notes=data.notes,
            is_deleted=False,
            created_by=principal.id,
            payments=[],
        )
        self.db.add(record)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise DuplicateRecord(
                f"A rent record for {data.billing_period} already exists on this lease"
            ) from e
        self.uow.audit.record(
            action="rent_record.create", target_kind="rent_record", target_id=record.id,
            actor=principal, after=snapshot(record, RECORD_FIELDS),
        )
        return record

    async def update(self, principal: Principal, record_id: uuid.UUID,
                     patch: RentRecordUpdate) -> RentRecord:
        record, lease = await self._load(record_id, for_update=True)
        await self.access.authorize(principal, Intent.MUTATE, Target.rent_record(record.id, lease))

        changes = patch.model_dump(exclude_unset=True)
        before = snapshot(record, RECORD_FIELDS)
        if changes.get("amount_due") is not None:
            amount = money(changes["amount_due"])
            if amount != record.amount_due:
                if record.status != RentStatus.DUE.value or record.payments:
                    raise StateConflict("amount_due can only change while the record is due with no payments")
                record.amount_due = amount
        if changes.get("due_date") is not None:
            record.due_date = changes["due_date"]
        if "notes" in changes:
            record.notes = changes["notes"]

        record.status = derive_status(record.amount_due, record.amount_paid, record.status).value
        await self.db.flush()
        self.uow.audit.record(
            action="rent_record.update", target_kind="rent_record", target_id=record.id,
            actor=principal, before=before, after=snapshot(record, RECORD_FIELDS),
        )
        return record

    async def record_payment(self, principal: Principal, record_id: uuid.UUID,
                             data: PaymentCreate, proof: IncomingFile | None = None) -> RentRecord:
        record, lease = await self._load(record_id, for_update=True)
        await self.access.authorize(principal, Intent.RECORD_PAYMENT, Target.rent_record(record.id, lease))

        current = RentStatus(record.status)
        if current not in OPEN_RENT_STATUSES:
            raise StateConflict(f"Cannot record a payment against a {current.value} rent record")
        if data.currency and data.currency.strip().upper() != record.currency:
            raise ValidationFailed(
                "Payment currency must match the rent record currency",
                details=[{"field": "currency", "message": f"expected {record.currency}"}],
            )
        amount = money(data.amount)
        if amount <= 0:
            raise ValidationFailed(
                "Payment amount must be positive", details=[{"field": "amount", "message": "must be > 0"}]
            )

        media = None
        if proof is not None:
            media = self._stage_upload(proof, f"rent/{record.id}", principal, ["rent", "payment-proof"])
            await self.db.flush()

        applied, excess = apply_payment(record.amount_due, record.amount_paid, amount)
        before = {"status": record.status, "amount_paid": record.amount_paid}
        payment = RentPayment(
            id=uuid.uuid4(),
            sequence=len(record.payments) + 1,
            amount=amount,
            credited_excess=excess,
            payment_date=data.payment_date,
            method=data.method.value,
            transaction_id=data.transaction_id,
            proof_id=media.id if media else None,
            notes=data.notes,
            recorded_by_kind=principal.actor_kind.value,
            recorded_by_id=principal.id,
        )
        record.payments.append(payment)
        record.amount_paid = money(record.amount_paid + applied)
        record.status = derive_status(record.amount_due, record.amount_paid, record.status).value
        if media is not None:
            await self._replace_proof(record, media)
        await self.db.flush()

        self.uow.audit.record(
            action="rent_record.record_payment", target_kind="rent_record", target_id=record.id,
            actor=principal, before=before,
            after={
                "status": record.status,
                "amount_paid": record.amount_paid,
                "payment_id": payment.id,
                "sequence": payment.sequence,
                "amount": amount,
                "credited_excess": excess,
            },
        )
        if record.status == RentStatus.PAID.value and current != RentStatus.PAID:
            self.uow.notify(Notification(
                kind="rent.paid",
                recipient_ids=await property_manager_ids(self.db, lease.property_id),
                subject=f"Rent paid for {record.billing_period}",
                message=(
                    f"Rent of {record.amount_due} {record.currency} for {record.billing_period} "
                    f"has been paid in full."
                ),
                link=f"/rents/{record.id}",
                data={"rent_record_id": str(record.id), "lease_id": str(lease.id)},
            ))
        logger.info(
            "Payment %s of %s recorded on rent record %s (%s)",
            payment.sequence, amount, record.id, record.status,
        )
        return record

    async def waive(self, principal: Principal, record_id: uuid.UUID, reason: str) -> RentRecord:
        record, lease = await self._load(record_id, for_update=True)
        role = await self.access.authorize(principal, Intent.MUTATE, Target.rent_record(record.id, lease))
        if RentStatus(record.status) not in OPEN_RENT_STATUSES:
            raise StateConflict(f"Cannot waive a {record.status} rent record")
        if record.amount_paid > 0 and role != Role.ADMIN:
            raise StateConflict("Only an admin can waive a rent record that has payments")
        return self._close(principal, record, RentStatus.WAIVED, reason, "rent_record.waive")

    async def cancel(self, principal: Principal, record_id: uuid.UUID, reason: str) -> RentRecord:
        record, lease = await self._load(record_id, for_update=True)
        await self.access.authorize(principal, Intent.MUTATE, Target.rent_record(record.id, lease))
        if RentStatus(record.status) not in OPEN_RENT_STATUSES:
            raise StateConflict(f"Cannot cancel a {record.status} rent record")
        if record.amount_paid > 0:
            raise StateConflict("Cannot cancel a rent record that has payments")
        return self._close(principal, record, RentStatus.CANCELLED, reason, "rent_record.cancel")

    def _close(self, principal: Principal, record: RentRecord, status: RentStatus,
               reason: str, action: str) -> RentRecord:
        before = {"status": record.status, "status_reason": record.status_reason}
        record.status = status.value
        record.status_reason = reason
        self.uow.audit.record(
            action=action, target_kind="rent_record", target_id=record.id, actor=principal,
            before=before, after={"status": status.value, "status_reason": reason},
        )
        return record

    async def attach_proof(self, principal: Principal, record_id: uuid.UUID,
                           incoming: IncomingFile) -> RentRecord:
        record, lease = await self._load(record_id, for_update=True)
        await self.access.authorize(principal, Intent.RECORD_PAYMENT, Target.rent_record(record.id, lease))
        before = {"payment_proof_id": json_safe(record.payment_proof_id)}
        media = self._stage_upload(incoming, f"rent/{record.id}", principal, ["rent", "payment-proof"])
        await self.db.flush()
        await self._replace_proof(record, media)
        await self.db.flush()
        self.uow.audit.record(
            action="rent_record.attach_proof", target_kind="rent_record", target_id=record.id,
            actor=principal, before=before,
            after={"payment_proof_id": media.id, "filename": media.filename},
        )
        return record

    async def detach_proof(self, principal: Principal, record_id: uuid.UUID) -> RentRecord:
        record, lease = await self._load(record_id, for_update=True)
        await self.access.authorize(principal, Intent.MUTATE, Target.rent_record(record.id, lease))
        if record.payment_proof_id is None:
            raise NotFound("No payment proof attached")
        before = {"payment_proof_id": json_safe(record.payment_proof_id)}
        # Payments may still reference the media row, so only the link goes
        record.payment_proof_id = None
        await self.db.flush()
        self.uow.audit.record(
            action="rent_record.detach_proof", target_kind="rent_record", target_id=record.id,
            actor=principal, before=before, after={"payment_proof_id": None},
        )
        return record

    async def download_proof(self, principal: Principal, record_id: uuid.UUID) -> tuple[str, int]:
        """Signed URL for the record's proof and its lifetime in seconds."""
        record, lease = await self._load(record_id)
        await self.access.authorize(principal, Intent.READ, Target.rent_record(record.id, lease))
        media = await self.db.get(Media, record.payment_proof_id) if record.payment_proof_id else None
        if media is None:
            raise NotFound("No payment proof attached")
        ttl = settings.signed_url_ttl_seconds
        return self.storage.signed_download_url(media.public_id, ttl), ttl

    async def delete(self, principal: Principal, record_id: uuid.UUID) -> RentRecord:
        record, lease = await self._load(record_id, for_update=True)
        await self.access.authorize(principal, Intent.DELETE, Target.rent_record(record.id, lease))
        if record.payments:
            raise DependencyBlocked(
                "Rent record has payments and cannot be deleted",
                details={"payments": len(record.payments)},
            )
        before = snapshot(record, RECORD_FIELDS)
        record.is_deleted = True
        await self.db.flush()
        self.uow.audit.record(
            action="rent_record.delete", target_kind="rent_record", target_id=record.id,
            actor=principal, before=before, after={"is_deleted": True},
        )
        return record

    async def rent_report_pdf(self, principal: Principal, lease_id: uuid.UUID,
                              start: date | None = None, end: date | None = None) -> Media:
        report = await self.lease_rent_report(principal, lease_id, start, end)
        lease = await self._lease(lease_id)
        await self.access.authorize(principal, Intent.MUTATE, Target.lease(lease))

        payload = {
            **{k: v for k, v in report.items() if k != "records"},
            "records": [
                {**snapshot(r, ("billing_period", "due_date", "amount_due", "amount_paid")),
                 "status": effective_status(r, self.clock.today()).value}
                for r in report["records"]
            ],
        }
        media = await self.documents.generate(
            DocumentType.RENT_REPORT, {"report": json_safe(payload)},
            {"folder": f"leases/{lease.id}/reports", "uploaded_by": principal.id},
        )
        self.uow.on_rollback(lambda: discard_object(self.storage, media.public_id))
        await self.db.flush()
        self.uow.audit.record(
            action="lease.generate_rent_report", target_kind="lease", target_id=lease.id,
            actor=principal,
            after={"media_id": media.id, "start": start, "end": end,
                   "total_due": report["total_due"], "outstanding": report["outstanding"]},
        )
        return media

    # ─── Sweep ───────────────────────────────────────────────────────────

    async def sweep_overdue(self, batch_size: int = 500) -> int:
        """Notify once for each open record that has gone past due."""
        today = self.clock.today()
        now = self.clock.now()
        result = await self.db.execute(
            select(RentRecord, Lease)
            .join(Lease, Lease.id == RentRecord.lease_id)
            .where(
                RentRecord.is_deleted == False,  # noqa: E712
                Lease.is_deleted == False,  # noqa: E712
                RentRecord.status.in_(_OPEN),
                RentRecord.due_date < today,
                RentRecord.overdue_notified_at.is_(None),
            )
            .order_by(RentRecord.due_date)
            .limit(batch_size)
            .with_for_update(of=RentRecord)
        )
        rows = result.all()
        managers_by_property: dict[uuid.UUID, list[str]] = {}
        for record, lease in rows:
            record.overdue_notified_at = now
            if lease.property_id not in managers_by_property:
                managers_by_property[lease.property_id] = await property_manager_ids(self.db, lease.property_id)
            self.uow.audit.record(
                action="rent_record.overdue_notice", target_kind="rent_record", target_id=record.id,
                actor=None, after={"overdue_notified_at": now, "due_date": record.due_date},
            )
            balance = money(record.amount_due - record.amount_paid)
            self.uow.notify(Notification(
                kind="rent.overdue",
                recipient_ids=sorted({str(lease.tenant_id), *managers_by_property[lease.property_id]}),
                subject=f"Rent overdue for {record.billing_period}",
                message=(
                    f"Rent for {record.billing_period} was due on {record.due_date}; "
                    f"{balance} {record.currency} is outstanding."
                ),
                link=f"/rents/{record.id}",
                data={"rent_record_id": str(record.id), "lease_id": str(lease.id)},
            ))
        await self.db.flush()
        if rows:
            logger.info("Flagged %d overdue rent record(s)", len(rows))
        return len(rows)
