import uuid

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leaseledger.core.clock import Clock, Deadline, get_clock
from leaseledger.core.config import settings
from leaseledger.core.database import get_db, get_session_factory
from leaseledger.core.errors import AccessDenied
from leaseledger.core.security import decode_token
from leaseledger.models.enums import Role
from leaseledger.models.user import User
from leaseledger.services.access import Principal
from leaseledger.services.documents import DocumentGenerator, PdfDocumentGenerator
from leaseledger.services.generator import RentGenerator
from leaseledger.services.leases import LeaseRegistry
from leaseledger.services.ledger import RentLedger
from leaseledger.services.notifications import CeleryNotifier, Notifier
from leaseledger.services.schedules import ScheduleEngine
from leaseledger.services.storage import ObjectStorage, get_storage
from leaseledger.services.unit_of_work import UnitOfWork

_bearer = HTTPBearer(auto_error=False)

_UNAUTHORIZED = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Not authenticated",
    headers={"WWW-Authenticate": "Bearer"},
)


# ─── Authentication ────────────────────────────────────

async def get_current_principal(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Bearer token first, then the httpOnly ``access_token`` cookie."""
    token = credentials.credentials if credentials else request.cookies.get("access_token")
    if not token:
        raise _UNAUTHORIZED

    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        raise _UNAUTHORIZED
    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise _UNAUTHORIZED

    user = await db.get(User, user_id)
    if user is None:
        raise _UNAUTHORIZED
    if not user.is_active:
        raise AccessDenied("Account is inactive")

    return Principal(
        id=user.id,
        role=Role(user.role),
        is_active=user.is_active,
        email=user.email,
        ip=request.client.host if request.client else None,
    )


# ─── Request context ───────────────────────────────────

def get_deadline(clock: Clock = Depends(get_clock)) -> Deadline:
    return Deadline(settings.request_timeout_seconds, clock)


def get_notifier() -> Notifier:
    return CeleryNotifier()


def get_uow(
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> UnitOfWork:
    return UnitOfWork(db, notifier)


def get_document_generator(
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
) -> DocumentGenerator:
    return PdfDocumentGenerator(db, storage)


# ─── Services ──────────────────────────────────────────

def get_lease_registry(
    uow: UnitOfWork = Depends(get_uow),
    clock: Clock = Depends(get_clock),
    storage: ObjectStorage = Depends(get_storage),
    documents: DocumentGenerator = Depends(get_document_generator),
) -> LeaseRegistry:
    return LeaseRegistry(uow, clock, storage=storage, documents=documents)


def get_schedule_engine(
    uow: UnitOfWork = Depends(get_uow),
    clock: Clock = Depends(get_clock),
) -> ScheduleEngine:
    return ScheduleEngine(uow, clock)


def get_rent_ledger(
    uow: UnitOfWork = Depends(get_uow),
    clock: Clock = Depends(get_clock),
    storage: ObjectStorage = Depends(get_storage),
    documents: DocumentGenerator = Depends(get_document_generator),
) -> RentLedger:
    return RentLedger(uow, clock, storage=storage, documents=documents)


def get_rent_generator(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
) -> RentGenerator:
    return RentGenerator(factory, notifier, clock)
