import uuid
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from leaseledger.core.clock import Clock, Deadline, get_clock
from leaseledger.core.database import get_db
from leaseledger.core.deps import get_current_principal, get_deadline, get_rent_generator, get_rent_ledger
from leaseledger.models.enums import PaymentMethod, RentStatus
from leaseledger.schemas.common import DEFAULT_LIMIT, MAX_LIMIT, Envelope, PageEnvelope, SignedUrlResponse, ok, paged
from leaseledger.schemas.rent import (
    GenerateRequest,
    GenerationSummaryResponse,
    HistoryGroup,
    HistoryResponse,
    PaymentCreate,
    RentRecordCreate,
    RentRecordResponse,
    RentRecordUpdate,
    StatusChangeRequest,
)
from leaseledger.services.access import AccessResolver, Principal
from leaseledger.services.generator import GenerationOptions, RentGenerator
from leaseledger.services.ledger import RentLedger
from leaseledger.services.storage import read_upload

router = APIRouter(prefix="/rents", tags=["rents"])


def _out(record, clock: Clock) -> RentRecordResponse:
    return RentRecordResponse.from_record(record, clock.today())


# ─── Collection routes (before /{rent_id}) ───────────────────────────────────

@router.get("", response_model=PageEnvelope[RentRecordResponse])
async def list_rents(
    status: RentStatus | None = None,
    lease_id: uuid.UUID | None = None,
    property_id: uuid.UUID | None = None,
    unit_id: uuid.UUID | None = None,
    tenant_id: uuid.UUID | None = None,
    billing_period: str | None = None,
    due_from: date | None = None,
    due_to: date | None = None,
    sort: str = "-due_date",
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    clock: Clock = Depends(get_clock),
):
    records, total = await ledger.list_records(
        principal,
        status=status,
        lease_id=lease_id,
        property_id=property_id,
        unit_id=unit_id,
        tenant_id=tenant_id,
        billing_period=billing_period,
        due_from=due_from,
        due_to=due_to,
        sort=sort,
        page=page,
        limit=limit,
    )
    return paged([_out(r, clock) for r in records], total, page, limit)


@router.post("", response_model=Envelope[RentRecordResponse], status_code=201)
async def create_rent(
    payload: RentRecordCreate,
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    deadline: Deadline = Depends(get_deadline),
    clock: Clock = Depends(get_clock),
):
    record = await ledger.uow.run(lambda: ledger.create(principal, payload), deadline)
    return ok(_out(record, clock), "Rent record created")


@router.get("/upcoming", response_model=Envelope[list[RentRecordResponse]])
async def upcoming_rents(
    horizon_days: int | None = Query(None, ge=0, le=366),
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    clock: Clock = Depends(get_clock),
):
    records = await ledger.upcoming(principal, horizon_days)
    return ok([_out(r, clock) for r in records])


@router.get("/history", response_model=Envelope[HistoryResponse])
async def rent_history(
    lease_id: uuid.UUID | None = None,
    property_id: uuid.UUID | None = None,
    cursor: str | None = None,
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    clock: Clock = Depends(get_clock),
):
    groups, next_cursor = await ledger.history(
        principal, lease_id=lease_id, property_id=property_id, cursor=cursor, limit=limit,
    )
    return ok(HistoryResponse(
        groups=[
            HistoryGroup(billing_period=period, records=[_out(r, clock) for r in records])
            for period, records in groups
        ],
        next_cursor=next_cursor,
    ))


@router.post("/generate", response_model=Envelope[GenerationSummaryResponse])
async def generate_rents(
    payload: GenerateRequest,
    principal: Principal = Depends(get_current_principal),
    generator: RentGenerator = Depends(get_rent_generator),
    deadline: Deadline = Depends(get_deadline),
    db: AsyncSession = Depends(get_db),
):
    scope = await AccessResolver(db).authorize_generate(principal)
    summary = await generator.generate_for(
        payload.target_date,
        GenerationOptions(
            force_generation=payload.force_generation,
            lease_id=payload.lease_id,
            scope=scope,
            deadline=deadline,
        ),
        principal,
    )
    return ok(GenerationSummaryResponse(**summary.to_dict()), "Rent generation finished")


# ─── Single record ───────────────────────────────────────────────────────────

@router.get("/{rent_id}", response_model=Envelope[RentRecordResponse])
async def get_rent(
    rent_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    clock: Clock = Depends(get_clock),
):
    return ok(_out(await ledger.get(principal, rent_id), clock))


@router.put("/{rent_id}", response_model=Envelope[RentRecordResponse])
async def update_rent(
    rent_id: uuid.UUID,
    payload: RentRecordUpdate,
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    deadline: Deadline = Depends(get_deadline),
    clock: Clock = Depends(get_clock),
):
    record = await ledger.uow.run(lambda: ledger.update(principal, rent_id, payload), deadline)
    return ok(_out(record, clock), "Rent record updated")


@router.delete("/{rent_id}", response_model=Envelope[RentRecordResponse])
async def delete_rent(
    rent_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    deadline: Deadline = Depends(get_deadline),
    clock: Clock = Depends(get_clock),
):
    record = await ledger.uow.run(lambda: ledger.delete(principal, rent_id), deadline)
    return ok(_out(record, clock), "Rent record deleted")


@router.post("/{rent_id}/pay", response_model=Envelope[RentRecordResponse])
async def pay_rent(
    rent_id: uuid.UUID,
    amount: Decimal = Form(...),
    payment_date: date = Form(...),
    method: PaymentMethod = Form(PaymentMethod.OTHER),
    transaction_id: str | None = Form(None),
    currency: str | None = Form(None),
    notes: str | None = Form(None),
    proof: UploadFile | None = File(None),
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    deadline: Deadline = Depends(get_deadline),
    clock: Clock = Depends(get_clock),
):
    """Record a payment; multipart so a proof file can ride along."""
    try:
        payment = PaymentCreate(
            amount=amount, payment_date=payment_date, method=method,
            transaction_id=transaction_id, currency=currency, notes=notes,
        )
    except ValidationError as e:
        raise RequestValidationError(e.errors()) from e
    incoming = await read_upload(proof) if proof is not None and proof.filename else None

    record = await ledger.uow.run(
        lambda: ledger.record_payment(principal, rent_id, payment, incoming), deadline
    )
    return ok(_out(record, clock), "Payment recorded")


@router.post("/{rent_id}/waive", response_model=Envelope[RentRecordResponse])
async def waive_rent(
    rent_id: uuid.UUID,
    payload: StatusChangeRequest,
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    deadline: Deadline = Depends(get_deadline),
    clock: Clock = Depends(get_clock),
):
    record = await ledger.uow.run(lambda: ledger.waive(principal, rent_id, payload.reason), deadline)
    return ok(_out(record, clock), "Rent record waived")


@router.post("/{rent_id}/cancel", response_model=Envelope[RentRecordResponse])
async def cancel_rent(
    rent_id: uuid.UUID,
    payload: StatusChangeRequest,
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    deadline: Deadline = Depends(get_deadline),
    clock: Clock = Depends(get_clock),
):
    record = await ledger.uow.run(lambda: ledger.cancel(principal, rent_id, payload.reason), deadline)
    return ok(_out(record, clock), "Rent record cancelled")


# ─── Payment proof ───────────────────────────────────────────────────────────

@router.post("/{rent_id}/upload-proof", response_model=Envelope[RentRecordResponse])
async def upload_proof(
    rent_id: uuid.UUID,
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    deadline: Deadline = Depends(get_deadline),
    clock: Clock = Depends(get_clock),
):
    incoming = await read_upload(file)
    record = await ledger.uow.run(lambda: ledger.attach_proof(principal, rent_id, incoming), deadline)
    return ok(_out(record, clock), "Payment proof attached")


@router.delete("/{rent_id}/proof", response_model=Envelope[RentRecordResponse])
async def detach_proof(
    rent_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    deadline: Deadline = Depends(get_deadline),
    clock: Clock = Depends(get_clock),
):
    record = await ledger.uow.run(lambda: ledger.detach_proof(principal, rent_id), deadline)
    return ok(_out(record, clock), "Payment proof detached")


@router.get("/{rent_id}/download-proof", response_model=Envelope[SignedUrlResponse])
async def download_proof(
    rent_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
):
    url, ttl = await ledger.download_proof(principal, rent_id)
    return ok(SignedUrlResponse(url=url, expires_in=ttl))
