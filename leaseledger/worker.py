from celery import Celery
from celery.schedules import crontab

from leaseledger.core.config import settings

celery_app = Celery(
    "leaseledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

# ─── Scheduled tasks ──────────────────────────
celery_app.conf.beat_schedule = {
    "generate-rent-records-daily": {
        "task": "leaseledger.services.jobs.generate_rent_records",
        "schedule": crontab(hour=settings.rent_generation_hour, minute=0),
    },
    "sweep-overdue-rent": {
        "task": "leaseledger.services.jobs.sweep_overdue_rent",
        "schedule": settings.overdue_sweep_interval,
    },
    "sweep-expired-leases": {
        "task": "leaseledger.services.jobs.sweep_expired_leases",
        "schedule": settings.lease_expiry_sweep_interval,
    },
}

# Explicitly include task modules so the worker registers them on startup.
# autodiscover_tasks() only looks for a "tasks.py" file, which we don't use.
celery_app.conf.include = [
    "leaseledger.services.jobs",
    "leaseledger.services.notifications",
]
