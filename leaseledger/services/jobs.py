"""
Background jobs: daily rent generation plus the overdue and lease-expiry
sweeps. Each job holds a Redis worker lock; a run that cannot take the lock
returns ``{"skipped": True}``.

The services are async, so each job runs them under ``asyncio.run`` on an
engine created for that run.
"""

import asyncio
import logging

from leaseledger.core.clock import get_clock
from leaseledger.core.database import create_job_session_factory
from leaseledger.core.redis import worker_lock
from leaseledger.services.generator import RentGenerator
from leaseledger.services.leases import LeaseRegistry
from leaseledger.services.ledger import RentLedger
from leaseledger.services.notifications import CeleryNotifier
from leaseledger.services.unit_of_work import UnitOfWork
from leaseledger.worker import celery_app

logger = logging.getLogger(__name__)


async def _generate() -> dict:
    engine, factory = create_job_session_factory()
    try:
        generator = RentGenerator(factory, CeleryNotifier(), get_clock())
        summary = await generator.generate_for()
        return {**summary.counters(), "run_id": summary.run_id, "interrupted": summary.interrupted}
    finally:
        await engine.dispose()


async def _sweep(sweep) -> int:
    engine, factory = create_job_session_factory()
    try:
        async with factory() as db:
            uow = UnitOfWork(db, CeleryNotifier())
            return await uow.run(lambda: sweep(uow))
    finally:
        await engine.dispose()


@celery_app.task(name="leaseledger.services.jobs.generate_rent_records")
def generate_rent_records() -> dict:
    """Materialise rent records for today across every active schedule."""
    with worker_lock("generate-rent-records") as acquired:
        if not acquired:
            return {"skipped": True}
        result = asyncio.run(_generate())
    logger.info("Daily rent generation: %s", result)
    return result


@celery_app.task(name="leaseledger.services.jobs.sweep_overdue_rent")
def sweep_overdue_rent() -> dict:
    with worker_lock("sweep-overdue-rent") as acquired:
        if not acquired:
            return {"skipped": True}
        flagged = asyncio.run(_sweep(lambda uow: RentLedger(uow, get_clock()).sweep_overdue()))
    return {"flagged": flagged}


@celery_app.task(name="leaseledger.services.jobs.sweep_expired_leases")
def sweep_expired_leases() -> dict:
    with worker_lock("sweep-expired-leases") as acquired:
        if not acquired:
            return {"skipped": True}
        expired = asyncio.run(_sweep(lambda uow: LeaseRegistry(uow, get_clock()).expire_ended_leases()))
    return {"expired": expired}
