"""
Rent schedules: the recurring definition each lease bills from.

A lease has at most one active schedule. ``upsert`` updates the active one in
place (or creates it), so repeating the same request is harmless. Disabling is
soft: the row stays for history and the generator simply stops selecting it.
"""

import logging
import uuid
from decimal import Decimal

from sqlalchemy import select

from leaseledger.core.clock import Clock
from leaseledger.core.errors import NotFound, StateConflict, ValidationFailed
from leaseledger.models.enums import LIVE_LEASE_STATUSES, Cadence, LeaseStatus, RentStatus
from leaseledger.models.rental import Lease, RentRecord, RentSchedule
from leaseledger.schemas.lease import RentScheduleUpdate, ScheduleSpec
from leaseledger.services.access import AccessResolver, Intent, Principal, Target
from leaseledger.services.audit import snapshot
from leaseledger.services.billing import ScheduleTerms, validate_day_of_cycle
from leaseledger.services.status import derive_status, money
from leaseledger.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = (
    "lease_id", "amount", "currency", "cadence", "day_of_cycle",
    "anchor_date", "end_date", "is_active", "notes",
)

_CALENDAR_CADENCES = (Cadence.MONTHLY, Cadence.QUARTERLY, Cadence.YEARLY)


def terms_for(schedule: RentSchedule) -> ScheduleTerms:
    return ScheduleTerms(
        cadence=Cadence(schedule.cadence),
        day_of_cycle=schedule.day_of_cycle,
        anchor=schedule.anchor_date,
        amount=schedule.amount,
        currency=schedule.currency,
        end_date=schedule.end_date,
    )


def _check_cycle(cadence: Cadence, day: int) -> None:
    try:
        validate_day_of_cycle(cadence, day)
    except ValueError as e:
        raise ValidationFailed(str(e), details=[{"field": "day_of_cycle", "message": str(e)}]) from e


class ScheduleEngine:
    def __init__(self, uow: UnitOfWork, clock: Clock):
        self.uow = uow
        self.db = uow.db
        self.clock = clock
        self.access = AccessResolver(self.db)

    # ─── Loading ─────────────────────────────────────────────────────────

    async def _lease(self, lease_id: uuid.UUID) -> Lease:
        lease = await self.db.scalar(
            select(Lease).where(Lease.id == lease_id, Lease.is_deleted == False)  # noqa: E712
        )
        if not lease:
            raise NotFound("Lease not found")
        return lease

    async def _schedule(self, schedule_id: uuid.UUID) -> tuple[RentSchedule, Lease]:
        row = (
            await self.db.execute(
                select(RentSchedule, Lease)
                .join(Lease, Lease.id == RentSchedule.lease_id)
                .where(RentSchedule.id == schedule_id, Lease.is_deleted == False)  # noqa: E712
            )
        ).first()
        if not row:
            raise NotFound("Rent schedule not found")
        return row[0], row[1]

    async def active_schedule(self, lease_id: uuid.UUID, *, for_update: bool = False) -> RentSchedule | None:
        stmt = select(RentSchedule).where(
            RentSchedule.lease_id == lease_id,
            RentSchedule.is_active == True,  # noqa: E712
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return await self.db.scalar(stmt)

    # ─── Queries ─────────────────────────────────────────────────────────

    async def get(self, principal: Principal, schedule_id: uuid.UUID) -> RentSchedule:
        schedule, lease = await self._schedule(schedule_id)
        await self.access.authorize(principal, Intent.READ, Target.schedule(schedule.id, lease))
        return schedule

    async def list_for_lease(self, principal: Principal, lease_id: uuid.UUID) -> list[RentSchedule]:
        lease = await self._lease(lease_id)
        await self.access.authorize(principal, Intent.READ, Target.schedule(None, lease))
        result = await self.db.execute(
            select(RentSchedule)
            .where(RentSchedule.lease_id == lease_id)
            .order_by(RentSchedule.is_active.desc(), RentSchedule.created_at.desc())
        )
        return list(result.scalars().all())

    # ─── Mutations ───────────────────────────────────────────────────────

    def _resolve(self, lease: Lease, spec: ScheduleSpec) -> dict:
        currency = spec.currency or lease.currency
        if currency != lease.currency:
            raise ValidationFailed(
                "Schedule currency must match the lease currency",
                details=[{"field": "currency", "message": f"expected {lease.currency}"}],
            )
        cadence = Cadence(spec.cadence)
        anchor = spec.anchor_date or lease.start_date
        day = spec.day_of_cycle
        if day is None:
            day = lease.payment_due_day if cadence in _CALENDAR_CADENCES else anchor.isoweekday()
        _check_cycle(cadence, day)
        if spec.end_date and spec.end_date < anchor:
            raise ValidationFailed(
                "end_date must be on or after anchor_date",
                details=[{"field": "end_date", "message": "before anchor_date"}],
            )
        return {
            "amount": money(spec.amount),
            "currency": currency,
            "cadence": cadence.value,
            "day_of_cycle": day,
            "anchor_date": anchor,
            "end_date": spec.end_date,
            "notes": spec.notes,
        }

    async def upsert(self, principal: Principal, lease_id: uuid.UUID,
                     spec: ScheduleSpec) -> tuple[RentSchedule, bool]:
        lease = await self._lease(lease_id)
        await self.access.authorize(principal, Intent.MUTATE, Target.schedule(None, lease))
        return await self.upsert_for_lease(principal, lease, spec)

    async def upsert_for_lease(self, principal: Principal, lease: Lease,
                               spec: ScheduleSpec) -> tuple[RentSchedule, bool]:
        """Create or replace the active schedule. Caller has authorized."""
        if LeaseStatus(lease.status) not in LIVE_LEASE_STATUSES:
            raise StateConflict(f"Cannot schedule rent for a lease that is {lease.status}")
        values = self._resolve(lease, spec)

        schedule = await self.active_schedule(lease.id, for_update=True)
        if schedule is not None:
            before = snapshot(schedule, SCHEDULE_FIELDS)
            for field, value in values.items():
                setattr(schedule, field, value)
            await self.db.flush()
            self.uow.audit.record(
                action="rent_schedule.update", target_kind="rent_schedule", target_id=schedule.id,
                actor=principal, before=before, after=snapshot(schedule, SCHEDULE_FIELDS),
            )
            return schedule, False

        schedule = RentSchedule(
            id=uuid.uuid4(), lease_id=lease.id, is_active=True, overrides=[],
            created_by=principal.id, **values,
        )
        self.db.add(schedule)
        await self.db.flush()
        self.uow.audit.record(
            action="rent_schedule.create", target_kind="rent_schedule", target_id=schedule.id,
            actor=principal, after=snapshot(schedule, SCHEDULE_FIELDS),
        )
        logger.info("Rent schedule %s created for lease %s", schedule.id, lease.id)
        return schedule, True

    async def update(self, principal: Principal, schedule_id: uuid.UUID,
                     patch: RentScheduleUpdate) -> RentSchedule:
        schedule, lease = await self._schedule(schedule_id)
        await self.access.authorize(principal, Intent.MUTATE, Target.schedule(schedule.id, lease))
        if not schedule.is_active:
            raise StateConflict("Rent schedule is disabled")

        changes = {k: v for k, v in patch.model_dump(exclude_unset=True).items()
                   if v is not None or k in ("end_date", "notes")}
        cadence = Cadence(changes.get("cadence", schedule.cadence))
        day = changes.get("day_of_cycle", schedule.day_of_cycle)
        _check_cycle(cadence, day)
        anchor = changes.get("anchor_date", schedule.anchor_date)
        end = changes.get("end_date", schedule.end_date)
        if end is not None and end < anchor:
            raise ValidationFailed(
                "end_date must be on or after anchor_date",
                details=[{"field": "end_date", "message": "before anchor_date"}],
            )

        before = snapshot(schedule, SCHEDULE_FIELDS)
        if "amount" in changes:
            changes["amount"] = money(changes["amount"])
        if "cadence" in changes:
            changes["cadence"] = cadence.value
        for field, value in changes.items():
            setattr(schedule, field, value)
        await self.db.flush()
        self.uow.audit.record(
            action="rent_schedule.update", target_kind="rent_schedule", target_id=schedule.id,
            actor=principal, before=before, after=snapshot(schedule, SCHEDULE_FIELDS),
        )
        return schedule

    async def disable(self, principal: Principal, schedule_id: uuid.UUID) -> RentSchedule:
        schedule, lease = await self._schedule(schedule_id)
        await self.access.authorize(principal, Intent.MUTATE, Target.schedule(schedule.id, lease))
        return await self._disable(principal, schedule)

    async def disable_for_lease(self, principal: Principal, lease_id: uuid.UUID) -> RentSchedule | None:
        lease = await self._lease(lease_id)
        await self.access.authorize(principal, Intent.MUTATE, Target.schedule(None, lease))
        schedule = await self.active_schedule(lease_id, for_update=True)
        if schedule is None:
            return None
        return await self._disable(principal, schedule)

    async def _disable(self, principal: Principal, schedule: RentSchedule) -> RentSchedule:
        if not schedule.is_active:
            return schedule
        schedule.is_active = False
        await self.db.flush()
        self.uow.audit.record(
            action="rent_schedule.disable", target_kind="rent_schedule", target_id=schedule.id,
            actor=principal, before={"is_active": True}, after={"is_active": False},
        )
        return schedule

    async def deactivate_for_lease(self, lease_id: uuid.UUID) -> uuid.UUID | None:
        """Soft-disable as part of a lease mutation; audited by that mutation."""
        schedule = await self.active_schedule(lease_id, for_update=True)
        if schedule is None:
            return None
        schedule.is_active = False
        return schedule.id

    async def apply_rent_change(self, lease: Lease, new_amount: Decimal) -> dict:
        """Move the active schedule to ``new_amount`` from today on.

        Future records still ``due`` with no payments take the new amount.
        Future records that already carry payments keep their amount and get
        an override entry on the schedule. Records already at ``new_amount``
        are left alone.
        """
        schedule = await self.active_schedule(lease.id, for_update=True)
        if schedule is None:
            return {"schedule_id": None, "updated_records": [], "overrides": []}

        amount = money(new_amount)
        schedule.amount = amount
        today = self.clock.today()
        result = await self.db.execute(
            select(RentRecord)
            .where(
                RentRecord.lease_id == lease.id,
                RentRecord.is_deleted == False,  # noqa: E712
                RentRecord.due_date >= today,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        updated, overrides = [], []
        for record in result.scalars().all():
            if record.amount_due == amount:
                continue
            if record.payments:
                overrides.append({
                    "rent_record_id": str(record.id),
                    "billing_period": record.billing_period,
                    "amount_due": str(record.amount_due),
                    "schedule_amount": str(amount),
                    "recorded_at": self.clock.now().isoformat(),
                })
                continue
            if record.status != RentStatus.DUE.value:
                continue
            record.amount_due = amount
            record.status = derive_status(record.amount_due, record.amount_paid, record.status).value
            updated.append(str(record.id))

        if overrides:
            schedule.overrides = [*(schedule.overrides or []), *overrides]
        await self.db.flush()
        return {"schedule_id": str(schedule.id), "updated_records": updated, "overrides": overrides}
