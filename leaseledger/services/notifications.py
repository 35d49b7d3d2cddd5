"""
Notification sink: one-way outbound notices on rent and lease transitions.

Services stage ``Notification`` values on the unit of work; they are handed
to the ``Notifier`` only after a successful commit. The Celery notifier
enqueues ``deliver_notification``, which resolves recipient e-mails with a
sync SQLAlchemy session and sends through the SMTP port.

Delivery is best-effort: failures are logged and never retried here.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field

from sqlalchemy import create_engine, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from leaseledger.core.config import settings
from leaseledger.models.enums import MANAGER_ROLES
from leaseledger.models.property import PropertyUser
from leaseledger.models.user import User
from leaseledger.services.email import get_email_client
from leaseledger.worker import celery_app

logger = logging.getLogger(__name__)

_engine = create_engine(settings.database_url_sync, pool_pre_ping=True)


@dataclass
class Notification:
    kind: str  # lease.status_changed | rent.paid | rent.overdue | rent.generation_summary
    recipient_ids: list[str]
    subject: str
    message: str
    link: str | None = None
    data: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        return asdict(self)


class Notifier(ABC):
    @abstractmethod
    def send(self, notification: Notification) -> None:
        ...


class CeleryNotifier(Notifier):
    def send(self, notification: Notification) -> None:
        deliver_notification.delay(notification.to_payload())


# ── Recipient helpers ─────────────────────────────────────────────────────────

async def property_manager_ids(db: AsyncSession, property_id: uuid.UUID) -> list[str]:
    """Active landlords / property managers of a property."""
    rows = (
        await db.execute(
            select(PropertyUser.user_id, PropertyUser.roles).where(
                PropertyUser.property_id == property_id,
                PropertyUser.is_active == True,  # noqa: E712
            )
        )
    ).all()
    manager_values = {r.value for r in MANAGER_ROLES}
    ids = {str(user_id) for user_id, roles in rows if manager_values.intersection(roles or [])}
    return sorted(ids)


# ── Delivery task ─────────────────────────────────────────────────────────────

def _emails_for(db: Session, recipient_ids: list[str]) -> list[str]:
    ids = [uuid.UUID(r) for r in recipient_ids]
    if not ids:
        return []
    rows = db.execute(
        select(User.email).where(User.id.in_(ids), User.is_active == True)  # noqa: E712
    ).scalars().all()
    return [e for e in rows if e]


@celery_app.task(name="leaseledger.services.notifications.deliver_notification")
def deliver_notification(payload: dict) -> bool:
    """Send one notification by e-mail to each recipient."""
    if not settings.email_enabled:
        logger.debug("Email disabled; dropping notification %s", payload.get("kind"))
        return False

    with Session(_engine) as db:
        recipients = _emails_for(db, payload.get("recipient_ids", []))

    if not recipients:
        logger.info("Notification %s has no deliverable recipients", payload.get("kind"))
        return False

    text = payload["message"]
    if payload.get("link"):
        text = f"{text}\n\n{settings.frontend_url}{payload['link']}"

    client = get_email_client()
    sent = client.send({"to": recipients, "subject": payload["subject"], "text": text})
    if not sent:
        logger.warning("Notification %s could not be delivered", payload.get("kind"))
    return sent
