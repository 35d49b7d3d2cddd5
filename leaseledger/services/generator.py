"""
Rent generator: materialises rent records from active schedules.

Each (lease, billing period) insert runs in its own short transaction, so an
interrupted run keeps whatever it already created. The unique
(lease_id, billing_period) constraint is the only guard against concurrent
generators: a duplicate-key outcome is counted as ``skipped``.

With ``force_generation`` an existing record is brought up to the schedule
amount, but only while it is ``due``, has no payments and its amount does not
exceed the schedule amount; anything else is a ``conflict`` and is left alone.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leaseledger.core.clock import Clock, Deadline
from leaseledger.core.config import settings
from leaseledger.models.enums import LIVE_LEASE_STATUSES, RentStatus
from leaseledger.models.rental import Lease, RentRecord, RentSchedule
from leaseledger.services.access import Principal, Scope
from leaseledger.services.audit import AuditLog
from leaseledger.services.billing import BillingPeriod, ScheduleTerms, applicable_periods
from leaseledger.services.notifications import Notification, Notifier
from leaseledger.services.schedules import terms_for
from leaseledger.services.status import derive_status

logger = logging.getLogger(__name__)


@dataclass
class GenerationOptions:
    force_generation: bool = False
    lease_id: uuid.UUID | None = None
    scope: Scope | None = None  # restricts a manager's run to their properties
    deadline: Deadline | None = None


@dataclass
class GenerationSummary:
    target_date: date
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    generated: int = 0
    skipped: int = 0
    conflict: int = 0
    failed: int = 0
    interrupted: bool = False

    def counters(self) -> dict:
        return {
            "generated": self.generated,
            "skipped": self.skipped,
            "conflict": self.conflict,
            "failed": self.failed,
        }

    def to_dict(self) -> dict:
        return {"target_date": self.target_date, **self.counters(), "interrupted": self.interrupted}


@dataclass(frozen=True)
class _Plan:
    schedule_id: uuid.UUID
    lease_id: uuid.UUID
    terms: ScheduleTerms
    lease_end: date


class RentGenerator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        clock: Clock,
        *,
        lead_days: int | None = None,
        backfill_days: int | None = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        self.lead_days = settings.rent_generation_lead_days if lead_days is None else lead_days
        self.backfill_days = settings.rent_generation_backfill_days if backfill_days is None else backfill_days

    async def _plans(self, target: date, options: GenerationOptions) -> list[_Plan]:
        stmt = (
            select(RentSchedule, Lease)
            .join(Lease, Lease.id == RentSchedule.lease_id)
            .where(
                RentSchedule.is_active == True,  # noqa: E712
                Lease.is_deleted == False,  # noqa: E712
                Lease.status.in_([s.value for s in LIVE_LEASE_STATUSES]),
                RentSchedule.anchor_date <= target,
                or_(RentSchedule.end_date.is_(None), RentSchedule.end_date >= target),
            )
            .order_by(Lease.id)
        )
        if options.lease_id:
            stmt = stmt.where(Lease.id == options.lease_id)
        if options.scope is not None:
            clause = options.scope.lease_clause()
            if clause is not None:
                stmt = stmt.where(clause)

        async with self.session_factory() as db:
            rows = (await db.execute(stmt)).all()
        return [
            _Plan(schedule_id=s.id, lease_id=lease.id, terms=terms_for(s), lease_end=lease.end_date)
            for s, lease in rows
        ]

    async def generate_for(
        self,
        target_date: date | None = None,
        options: GenerationOptions | None = None,
        principal: Principal | None = None,
    ) -> GenerationSummary:
        """Materialise every applicable record for ``target_date`` (default today)."""
        options = options or GenerationOptions()
        target = target_date or self.clock.today()
        summary = GenerationSummary(target_date=target)

        for plan in await self._plans(target, options):
            try:
                periods = applicable_periods(
                    plan.terms, target, self.lead_days, self.backfill_days, plan.lease_end
                )
            except (ValueError, OverflowError) as e:
                logger.error("Schedule %s has unusable terms: %s", plan.schedule_id, e)
                summary.failed += 1
                continue

            for period in periods:
                if options.deadline is not None and options.deadline.expired:
                    summary.interrupted = True
                    break
                outcome = await self._materialise(plan, period, options, principal)
                setattr(summary, outcome, getattr(summary, outcome) + 1)
            if summary.interrupted:
                logger.warning("Rent generation for %s interrupted by its deadline", target)
                break

        await self._finish(summary, options, principal)
        return summary

    # ─── One record ──────────────────────────────────────────────────────

    async def _materialise(self, plan: _Plan, period: BillingPeriod,
                           options: GenerationOptions, principal: Principal | None) -> str:
        """Insert one record; returns the counter it lands in."""
        try:
            async with self.session_factory() as db:
                record = RentRecord(
                    id=uuid.uuid4(),
                    lease_id=plan.lease_id,
                    billing_period=period.key,
                    due_date=period.due_date,
                    amount_due=plan.terms.amount,
                    amount_paid=0,
                    currency=plan.terms.currency,
                    status=derive_status(plan.terms.amount, 0, RentStatus.DUE).value,
                    is_deleted=False,
                    created_by=principal.id if principal else None,
                    payments=[],
                )
                db.add(record)
                try:
                    await db.flush()
                except IntegrityError:
                    await db.rollback()
                    if not options.force_generation:
                        return "skipped"
                    return await self._force(db, plan, period, principal)

                AuditLog(db).record(
                    action="rent_record.generate", target_kind="rent_record", target_id=record.id,
                    actor=principal,
                    after={
                        "lease_id": plan.lease_id,
                        "schedule_id": plan.schedule_id,
                        "billing_period": period.key,
                        "due_date": period.due_date,
                        "amount_due": plan.terms.amount,
                        "currency": plan.terms.currency,
                    },
                )
                await db.commit()
                return "generated"
        except Exception:
            logger.exception(
                "Failed to generate rent for lease %s period %s", plan.lease_id, period.key
            )
            return "failed"

    async def _force(self, db: AsyncSession, plan: _Plan, period: BillingPeriod,
                     principal: Principal | None) -> str:
        record = await db.scalar(
            select(RentRecord)
            .where(RentRecord.lease_id == plan.lease_id, RentRecord.billing_period == period.key)
            .with_for_update()
        )
        if record is None or record.is_deleted:
            return "skipped"
        if (
            record.status != RentStatus.DUE.value
            or record.payments
            or record.amount_due > plan.terms.amount
        ):
            return "conflict"
        if record.amount_due == plan.terms.amount and record.due_date == period.due_date:
            return "skipped"

        before = {"amount_due": record.amount_due, "due_date": record.due_date}
        record.amount_due = plan.terms.amount
        record.due_date = period.due_date
        record.status = derive_status(record.amount_due, record.amount_paid, record.status).value
        AuditLog(db).record(
            action="rent_record.regenerate", target_kind="rent_record", target_id=record.id,
            actor=principal, before=before,
            after={"amount_due": record.amount_due, "due_date": record.due_date,
                   "schedule_id": plan.schedule_id},
        )
        await db.commit()
        return "generated"

    # ─── Summary ─────────────────────────────────────────────────────────

    async def _finish(self, summary: GenerationSummary, options: GenerationOptions,
                      principal: Principal | None) -> None:
        async with self.session_factory() as db:
            AuditLog(db).record(
                action="rent_generation.run", target_kind="rent_generation",
                target_id=summary.run_id, actor=principal,
                after={
                    **summary.to_dict(),
                    "force_generation": options.force_generation,
                    "lease_id": options.lease_id,
                },
                outcome="partial" if summary.interrupted or summary.failed else "success",
            )
            await db.commit()

        logger.info(
            "Rent generation %s for %s: %s%s",
            summary.run_id, summary.target_date, summary.counters(),
            " (interrupted)" if summary.interrupted else "",
        )
        if principal is None:
            return
        notification = Notification(
            kind="rent.generation_summary",
            recipient_ids=[str(principal.id)],
            subject=f"Rent generation for {summary.target_date}",
            message=(
                f"Generated {summary.generated}, skipped {summary.skipped}, "
                f"conflicts {summary.conflict}, failed {summary.failed}."
            ),
            data={"run_id": summary.run_id, **summary.counters()},
        )
        try:
            self.notifier.send(notification)
        except Exception:
            logger.exception("Failed to enqueue generation summary %s", summary.run_id)
