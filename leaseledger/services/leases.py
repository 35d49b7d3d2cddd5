"""
Lease registry.

Enforces the lease invariants:
  * the unit belongs to the property and the tenant holds an active tenant
    association to that unit
  * per unit, leases in active / pending_renewal never overlap in time
  * status moves only along active ↔ pending_renewal → renewed, and
    active | pending_renewal → terminated; expiry is the sweep's job

Deletion is soft and refused while any rent record carries a payment.
A lease that leaves the live statuses, or is deleted, releases the tenant's
unit association unless another live lease of theirs on the unit holds it.
"""

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from leaseledger.core.clock import Clock
from leaseledger.core.config import settings
from leaseledger.core.errors import DependencyBlocked, NotFound, StateConflict, ValidationFailed
from leaseledger.models.enums import (
    LIVE_LEASE_STATUSES,
    TERMINAL_LEASE_STATUSES,
    DocumentType,
    LeaseStatus,
    Role,
)
from leaseledger.models.media import Media
from leaseledger.models.property import Property, PropertyUser, Unit
from leaseledger.models.rental import Lease, RentPayment, RentRecord
from leaseledger.models.user import User
from leaseledger.schemas.lease import LeaseAmendmentCreate, LeaseCreate, LeaseUpdate
from leaseledger.services.access import AccessResolver, Intent, Principal, Target
from leaseledger.services.audit import snapshot
from leaseledger.services.documents import DocumentGenerator
from leaseledger.services.notifications import Notification, property_manager_ids
from leaseledger.services.schedules import ScheduleEngine
from leaseledger.services.status import money
from leaseledger.services.storage import IncomingFile, ObjectStorage, discard_object, store_media
from leaseledger.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

LEASE_FIELDS = (
    "property_id", "unit_id", "tenant_id", "start_date", "end_date", "monthly_rent",
    "currency", "payment_due_day", "security_deposit", "status", "terms",
    "renewal_notice_sent", "termination_reason", "is_deleted",
)

ALLOWED_TRANSITIONS: dict[LeaseStatus, frozenset] = {
    LeaseStatus.ACTIVE: frozenset({LeaseStatus.PENDING_RENEWAL, LeaseStatus.TERMINATED}),
    LeaseStatus.PENDING_RENEWAL: frozenset({
        LeaseStatus.ACTIVE, LeaseStatus.RENEWED, LeaseStatus.TERMINATED,
    }),
}


async def ensure_tenant_association(db: AsyncSession, tenant_id: uuid.UUID,
                                    property_id: uuid.UUID, unit_id: uuid.UUID) -> PropertyUser:
    """Return the tenant's active association to the unit, creating it if the
    unit has no active tenant."""
    current = await db.scalar(
        select(PropertyUser).where(
            PropertyUser.unit_id == unit_id,
            PropertyUser.is_active == True,  # noqa: E712
            PropertyUser.is_tenant == True,  # noqa: E712
        )
    )
    if current is not None:
        if current.user_id != tenant_id:
            raise StateConflict("Unit already has an active tenant")
        return current
    assoc = PropertyUser(
        id=uuid.uuid4(),
        user_id=tenant_id,
        property_id=property_id,
        unit_id=unit_id,
        roles=[Role.TENANT.value],
        is_tenant=True,
        is_active=True,
    )
    db.add(assoc)
    return assoc


async def release_tenant_association(db: AsyncSession, lease: Lease,
                                     ended_at: datetime) -> uuid.UUID | None:
    """Deactivate the tenant's association to the lease's unit once no other
    live lease of theirs on that unit still relies on it."""
    other = await db.scalar(
        select(Lease.id).where(
            Lease.unit_id == lease.unit_id,
            Lease.tenant_id == lease.tenant_id,
            Lease.id != lease.id,
            Lease.is_deleted == False,  # noqa: E712
            Lease.status.in_([s.value for s in LIVE_LEASE_STATUSES]),
        ).limit(1)
    )
    if other is not None:
        return None
    assoc = await db.scalar(
        select(PropertyUser).where(
            PropertyUser.user_id == lease.tenant_id,
            PropertyUser.unit_id == lease.unit_id,
            PropertyUser.is_active == True,  # noqa: E712
            PropertyUser.is_tenant == True,  # noqa: E712
        )
    )
    if assoc is None:
        return None
    assoc.is_active = False
    assoc.end_date = ended_at
    return assoc.id


class LeaseRegistry:
    def __init__(self, uow: UnitOfWork, clock: Clock, *,
                 storage: ObjectStorage | None = None,
                 documents: DocumentGenerator | None = None):
        self.uow = uow
        self.db = uow.db
        self.clock = clock
        self.storage = storage
        self.documents = documents
        self.access = AccessResolver(self.db)
        self.schedules = ScheduleEngine(uow, clock)

    # ─── Helpers ─────────────────────────────────────────────────────────

    async def _load(self, lease_id: uuid.UUID, *, for_update: bool = False) -> Lease:
        stmt = select(Lease).where(Lease.id == lease_id, Lease.is_deleted == False)  # noqa: E712
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        lease = await self.db.scalar(stmt)
        if not lease:
            raise NotFound("Lease not found")
        return lease

    async def _check_overlap(self, unit_id: uuid.UUID, start, end,
                             exclude_id: uuid.UUID | None = None) -> None:
        stmt = select(Lease.id).where(
            Lease.unit_id == unit_id,
            Lease.is_deleted == False,  # noqa: E712
            Lease.status.in_([s.value for s in LIVE_LEASE_STATUSES]),
            Lease.start_date <= end,
            Lease.end_date >= start,
        )
        if exclude_id is not None:
            stmt = stmt.where(Lease.id != exclude_id)
        conflicting = await self.db.scalar(stmt.limit(1))
        if conflicting:
            raise StateConflict(
                "Unit already has an active lease overlapping these dates",
                details={"conflicting_lease_id": str(conflicting)},
            )

    async def _notify_status(self, lease: Lease, old: str | None, new: str) -> None:
        recipients = {str(lease.tenant_id), *await property_manager_ids(self.db, lease.property_id)}
        verb = "created" if old is None else f"changed from {old} to {new}"
        self.uow.notify(Notification(
            kind="lease.status_changed",
            recipient_ids=sorted(recipients),
            subject=f"Lease {new.replace('_', ' ')}",
            message=f"Lease for {lease.start_date} to {lease.end_date} was {verb}.",
            link=f"/leases/{lease.id}",
            data={"lease_id": str(lease.id), "old_status": old, "new_status": new},
        ))

    # ─── Queries ─────────────────────────────────────────────────────────

    async def get(self, principal: Principal, lease_id: uuid.UUID) -> Lease:
        lease = await self._load(lease_id)
        await self.access.authorize(principal, Intent.READ, Target.lease(lease))
        return lease

    async def list_leases(
        self,
        principal: Principal,
        *,
        status: LeaseStatus | None = None,
        property_id: uuid.UUID | None = None,
        unit_id: uuid.UUID | None = None,
        tenant_id: uuid.UUID | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Lease], int]:
        scope = await self.access.scope(principal)
        stmt = select(Lease).where(Lease.is_deleted == False)  # noqa: E712
        clause = scope.lease_clause()
        if clause is not None:
            stmt = stmt.where(clause)
        if status:
            stmt = stmt.where(Lease.status == LeaseStatus(status).value)
        if property_id:
            stmt = stmt.where(Lease.property_id == property_id)
        if unit_id:
            stmt = stmt.where(Lease.unit_id == unit_id)
        if tenant_id:
            stmt = stmt.where(Lease.tenant_id == tenant_id)

        total = await self.db.scalar(select(func.count()).select_from(stmt.subquery()))
        result = await self.db.execute(
            stmt.order_by(Lease.start_date.desc(), Lease.id).offset((page - 1) * limit).limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def expiring(self, principal: Principal, horizon_days: int) -> list[Lease]:
        """Live leases ending within (today, today + horizon], soonest first."""
        scope = await self.access.scope(principal)
        today = self.clock.today()
        stmt = select(Lease).where(
            Lease.is_deleted == False,  # noqa: E712
            Lease.status.in_([s.value for s in LIVE_LEASE_STATUSES]),
            Lease.end_date > today,
            Lease.end_date <= today + timedelta(days=horizon_days),
        )
        clause = scope.lease_clause()
        if clause is not None:
            stmt = stmt.where(clause)
        result = await self.db.execute(stmt.order_by(Lease.end_date.asc(), Lease.id))
        return list(result.scalars().all())

    # ─── Mutations ───────────────────────────────────────────────────────

    async def create(self, principal: Principal, data: LeaseCreate) -> Lease:
        await self.access.authorize(principal, Intent.MUTATE, Target.for_property(data.property_id))

        prop = await self.db.get(Property, data.property_id)
        if not prop:
            raise NotFound("Property not found")
        # Serialises lease creation per unit on PostgreSQL
        unit = await self.db.scalar(select(Unit).where(Unit.id == data.unit_id).with_for_update())
        if not unit:
            raise NotFound("Unit not found")
        if unit.property_id != prop.id:
            raise ValidationFailed(
                "Unit does not belong to the property",
                details=[{"field": "unit_id", "message": "unit is not part of property"}],
            )
        tenant = await self.db.get(User, data.tenant_id)
        if not tenant or not tenant.is_active:
            raise NotFound("Tenant not found")

        if data.schedule and data.schedule.currency and data.schedule.currency != data.currency:
            raise ValidationFailed(
                "A lease carries a single currency; schedule currency differs",
                details=[{"field": "schedule.currency", "message": f"expected {data.currency}"}],
            )

        if data.create_association:
            await ensure_tenant_association(self.db, tenant.id, prop.id, unit.id)
        else:
            assoc = await self.db.scalar(
                select(PropertyUser.id).where(
                    PropertyUser.user_id == tenant.id,
                    PropertyUser.unit_id == unit.id,
                    PropertyUser.is_active == True,  # noqa: E712
                    PropertyUser.is_tenant == True,  # noqa: E712
                )
            )
            if assoc is None:
                raise ValidationFailed(
                    "Tenant has no active tenant association to this unit",
                    details=[{"field": "tenant_id", "message": "missing tenant association"}],
                )

        status = LeaseStatus(data.status)
        if status in TERMINAL_LEASE_STATUSES:
            raise ValidationFailed(
                f"A lease cannot be created as {status.value}",
                details=[{"field": "status", "message": "must be active or pending_renewal"}],
            )
        await self._check_overlap(unit.id, data.start_date, data.end_date)

        lease = Lease(
            id=uuid.uuid4(),
            property_id=prop.id,
            unit_id=unit.id,
            tenant_id=tenant.id,
            start_date=data.start_date,
            end_date=data.end_date,
            monthly_rent=money(data.monthly_rent),
            currency=data.currency,
            payment_due_day=data.payment_due_day,
            security_deposit=money(data.security_deposit),
            status=status.value,
            terms=data.terms,
            renewal_notice_sent=False,
            documents=[],
            amendments=[],
            is_deleted=False,
            created_by=principal.id,
            updated_by=principal.id,
        )
        self.db.add(lease)
        await self.db.flush()
        self.uow.audit.record(
            action="lease.create", target_kind="lease", target_id=lease.id,
            actor=principal, after=snapshot(lease, LEASE_FIELDS),
        )

        if data.schedule is not None:
            await self.schedules.upsert_for_lease(principal, lease, data.schedule)

        await self._notify_status(lease, None, lease.status)
        logger.info("Lease %s created on unit %s", lease.id, unit.id)
        return lease

    async def update(self, principal: Principal, lease_id: uuid.UUID, patch: LeaseUpdate) -> Lease:
        lease = await self._load(lease_id, for_update=True)
        await self.access.authorize(principal, Intent.MUTATE, Target.lease(lease))

        current = LeaseStatus(lease.status)
        if current in TERMINAL_LEASE_STATUSES:
            raise StateConflict(f"Lease is {current.value} and can no longer be changed")

        changes = {k: v for k, v in patch.model_dump(exclude_unset=True).items()
                   if v is not None or k in ("terms", "termination_reason")}
        new_status = LeaseStatus(changes.pop("status", current))
        if new_status != current and new_status not in ALLOWED_TRANSITIONS[current]:
            raise StateConflict(f"Cannot move a lease from {current.value} to {new_status.value}")

        start = changes.get("start_date", lease.start_date)
        end = changes.get("end_date", lease.end_date)
        if end <= start:
            raise ValidationFailed(
                "end_date must be after start_date",
                details=[{"field": "end_date", "message": "must be after start_date"}],
            )
        if ("start_date" in changes or "end_date" in changes) and new_status in LIVE_LEASE_STATUSES:
            await self._check_overlap(lease.unit_id, start, end, exclude_id=lease.id)

        before = snapshot(lease, LEASE_FIELDS)
        rent_change = None
        new_rent = changes.pop("monthly_rent", None)
        if new_rent is not None and money(new_rent) != lease.monthly_rent:
            lease.monthly_rent = money(new_rent)
            rent_change = await self.schedules.apply_rent_change(lease, lease.monthly_rent)
        if "security_deposit" in changes:
            changes["security_deposit"] = money(changes["security_deposit"])

        reason = changes.pop("termination_reason", None)
        for field, value in changes.items():
            setattr(lease, field, value)

        disabled_schedule = None
        released = None
        if new_status != current:
            lease.status = new_status.value
            if new_status == LeaseStatus.TERMINATED:
                lease.terminated_at = self.clock.now()
                lease.terminated_by = principal.id
                lease.termination_reason = reason
            if new_status not in LIVE_LEASE_STATUSES:
                disabled_schedule = await self.schedules.deactivate_for_lease(lease.id)
                released = await release_tenant_association(self.db, lease, self.clock.now())
        lease.updated_by = principal.id
        await self.db.flush()

        after = snapshot(lease, LEASE_FIELDS)
        if rent_change:
            after["rent_change"] = rent_change
        if disabled_schedule:
            after["disabled_schedule_id"] = str(disabled_schedule)
        if released:
            after["released_association_id"] = str(released)
        self.uow.audit.record(
            action="lease.update", target_kind="lease", target_id=lease.id,
            actor=principal, before=before, after=after,
        )
        if new_status != current:
            await self._notify_status(lease, current.value, new_status.value)
        return lease

    async def delete(self, principal: Principal, lease_id: uuid.UUID) -> Lease:
        lease = await self._load(lease_id, for_update=True)
        await self.access.authorize(principal, Intent.DELETE, Target.lease(lease))

        with_payments = await self.db.scalar(
            select(func.count(func.distinct(RentPayment.rent_record_id)))
            .join(RentRecord, RentRecord.id == RentPayment.rent_record_id)
            .where(RentRecord.lease_id == lease.id)
        )
        if with_payments:
            raise DependencyBlocked(
                "Lease has rent records with recorded payments and cannot be deleted",
                details={"records_with_payments": with_payments},
            )

        result = await self.db.execute(
            select(RentRecord).where(
                RentRecord.lease_id == lease.id,
                RentRecord.is_deleted == False,  # noqa: E712
            )
        )
        removed = []
        for record in result.scalars().all():
            record.is_deleted = True
            removed.append(str(record.id))
        disabled_schedule = await self.schedules.deactivate_for_lease(lease.id)
        released = None
        if lease.status in {s.value for s in LIVE_LEASE_STATUSES}:
            released = await release_tenant_association(self.db, lease, self.clock.now())

        before = snapshot(lease, LEASE_FIELDS)
        lease.is_deleted = True
        lease.updated_by = principal.id
        await self.db.flush()
        self.uow.audit.record(
            action="lease.delete", target_kind="lease", target_id=lease.id,
            actor=principal, before=before,
            after={
                "is_deleted": True,
                "removed_rent_records": removed,
                "disabled_schedule_id": str(disabled_schedule) if disabled_schedule else None,
                "released_association_id": str(released) if released else None,
            },
        )
        logger.info("Lease %s deleted (%d rent records removed)", lease.id, len(removed))
        return lease

    async def mark_renewal_notice_sent(self, principal: Principal, lease_id: uuid.UUID) -> Lease:
        lease = await self._load(lease_id, for_update=True)
        await self.access.authorize(principal, Intent.MUTATE, Target.lease(lease))
        if lease.renewal_notice_sent:
            return lease
        lease.renewal_notice_sent = True
        lease.last_renewal_notice_at = self.clock.now()
        lease.updated_by = principal.id
        await self.db.flush()
        self.uow.audit.record(
            action="lease.mark_renewal_notice_sent", target_kind="lease", target_id=lease.id,
            actor=principal, before={"renewal_notice_sent": False}, after={"renewal_notice_sent": True},
        )
        return lease

    # ─── Documents ───────────────────────────────────────────────────────

    async def _attach(self, principal: Principal, lease: Lease, media: Media, action: str) -> None:
        await self.db.flush()
        lease.documents = [*(lease.documents or []), str(media.id)]
        lease.updated_by = principal.id
        await self.db.flush()
        self.uow.audit.record(
            action=action, target_kind="lease", target_id=lease.id, actor=principal,
            after={"media_id": str(media.id), "filename": media.filename,
                   "document_type": media.document_type},
        )

    async def attach_document(self, principal: Principal, lease_id: uuid.UUID,
                              incoming: IncomingFile) -> Media:
        lease = await self._load(lease_id, for_update=True)
        await self.access.authorize(principal, Intent.MUTATE, Target.lease(lease))
        media = store_media(
            self.db, self.storage, incoming,
            folder=f"leases/{lease.id}", uploaded_by=principal.id,
            document_type=DocumentType.OTHER.value, tags=["lease"],
        )
        self.uow.on_rollback(lambda: discard_object(self.storage, media.public_id))
        await self._attach(principal, lease, media, "lease.attach_document")
        return media

    async def generate_document(self, principal: Principal, lease_id: uuid.UUID,
                                document_type: DocumentType, notes: str | None = None) -> Media:
        lease = await self._load(lease_id, for_update=True)
        await self.access.authorize(principal, Intent.MUTATE, Target.lease(lease))
        if DocumentType(document_type) == DocumentType.RENT_REPORT:
            raise ValidationFailed(
                "Rent reports are generated from the rent-report endpoint",
                details=[{"field": "document_type", "message": "not a lease document"}],
            )

        prop = await self.db.get(Property, lease.property_id)
        unit = await self.db.get(Unit, lease.unit_id)
        tenant = await self.db.get(User, lease.tenant_id)
        data = {
            "lease": {"id": str(lease.id), **snapshot(lease, LEASE_FIELDS)},
            "property_name": prop.name if prop else None,
            "unit_label": unit.unit_label if unit else None,
            "tenant_name": tenant.full_name if tenant else None,
            "notes": notes,
        }
        media = await self.documents.generate(
            DocumentType(document_type), data,
            {"folder": f"leases/{lease.id}", "uploaded_by": principal.id},
        )
        self.uow.on_rollback(lambda: discard_object(self.storage, media.public_id))
        await self._attach(principal, lease, media, "lease.generate_document")
        return media

    async def download_document(self, principal: Principal, lease_id: uuid.UUID,
                                document_id: uuid.UUID) -> tuple[str, int, Media]:
        """Signed URL for one of the lease's documents and its lifetime in seconds."""
        lease = await self._load(lease_id)
        await self.access.authorize(principal, Intent.READ, Target.lease(lease))
        if str(document_id) not in (lease.documents or []):
            raise NotFound("Document not found")
        media = await self.db.get(Media, document_id)
        if media is None:
            raise NotFound("Document not found")
        ttl = settings.signed_url_ttl_seconds
        return self.storage.signed_download_url(media.public_id, ttl), ttl, media

    # ─── Amendments ──────────────────────────────────────────────────────

    async def add_amendment(self, principal: Principal, lease_id: uuid.UUID,
                            data: LeaseAmendmentCreate) -> Lease:
        lease = await self._load(lease_id, for_update=True)
        await self.access.authorize(principal, Intent.MUTATE, Target.lease(lease))
        current = LeaseStatus(lease.status)
        if current in TERMINAL_LEASE_STATUSES:
            raise StateConflict(f"Lease is {current.value} and can no longer be amended")
        if data.document_id is not None and str(data.document_id) not in (lease.documents or []):
            raise NotFound("Document not found on this lease")

        amendment = {
            "id": str(uuid.uuid4()),
            "description": data.description,
            "document_id": str(data.document_id) if data.document_id else None,
            "amendment_date": (data.amendment_date or self.clock.today()).isoformat(),
            "created_by": str(principal.id),
            "created_at": self.clock.now().isoformat(),
        }
        lease.amendments = [*(lease.amendments or []), amendment]
        lease.updated_by = principal.id
        await self.db.flush()
        self.uow.audit.record(
            action="lease.add_amendment", target_kind="lease", target_id=lease.id,
            actor=principal, after=amendment,
        )
        self.uow.notify(Notification(
            kind="lease.amended",
            recipient_ids=[str(lease.tenant_id)],
            subject="Lease amended",
            message=f"Lease for {lease.start_date} to {lease.end_date} was amended: {data.description}",
            link=f"/leases/{lease.id}",
            data={"lease_id": str(lease.id), "amendment_id": amendment["id"]},
        ))
        logger.info("Lease %s amended by %s", lease.id, principal.id)
        return lease

    # ─── Sweep ───────────────────────────────────────────────────────────

    async def expire_ended_leases(self, batch_size: int = 500) -> int:
        """Move live leases whose end date has passed to ``expired``."""
        today = self.clock.today()
        result = await self.db.execute(
            select(Lease)
            .where(
                Lease.is_deleted == False,  # noqa: E712
                Lease.status.in_([s.value for s in LIVE_LEASE_STATUSES]),
                Lease.end_date < today,
            )
            .order_by(Lease.end_date)
            .limit(batch_size)
            .with_for_update()
        )
        leases = list(result.scalars().all())
        for lease in leases:
            old = lease.status
            lease.status = LeaseStatus.EXPIRED.value
            disabled = await self.schedules.deactivate_for_lease(lease.id)
            released = await release_tenant_association(self.db, lease, self.clock.now())
            self.uow.audit.record(
                action="lease.expire", target_kind="lease", target_id=lease.id, actor=None,
                before={"status": old},
                after={"status": LeaseStatus.EXPIRED.value,
                       "disabled_schedule_id": str(disabled) if disabled else None,
                       "released_association_id": str(released) if released else None},
            )
            await self._notify_status(lease, old, lease.status)
        await self.db.flush()
        if leases:
            logger.info("Expired %d lease(s) ending before %s", len(leases), today)
        return len(leases)
