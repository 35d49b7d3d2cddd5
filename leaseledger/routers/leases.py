import uuid
from datetime import date

from fastapi import APIRouter, Depends, File, Query, UploadFile

from leaseledger.core.clock import Clock, Deadline, get_clock
from leaseledger.core.config import settings
from leaseledger.core.deps import get_current_principal, get_deadline, get_lease_registry, get_rent_ledger
from leaseledger.models.enums import LeaseStatus
from leaseledger.schemas.common import DEFAULT_LIMIT, MAX_LIMIT, Envelope, MediaResponse, PageEnvelope, ok, paged
from leaseledger.schemas.lease import (
    GenerateDocumentRequest,
    LeaseAmendmentCreate,
    LeaseCreate,
    LeaseDocumentDownload,
    LeaseResponse,
    LeaseUpdate,
)
from leaseledger.schemas.rent import LeaseRentReportResponse, RentRecordResponse
from leaseledger.services.access import Principal
from leaseledger.services.leases import LeaseRegistry
from leaseledger.services.ledger import RentLedger
from leaseledger.services.storage import read_upload

router = APIRouter(prefix="/leases", tags=["leases"])


@router.get("", response_model=PageEnvelope[LeaseResponse])
async def list_leases(
    status: LeaseStatus | None = None,
    property_id: uuid.UUID | None = None,
    unit_id: uuid.UUID | None = None,
    tenant_id: uuid.UUID | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    principal: Principal = Depends(get_current_principal),
    leases: LeaseRegistry = Depends(get_lease_registry),
):
    items, total = await leases.list_leases(
        principal, status=status, property_id=property_id, unit_id=unit_id,
        tenant_id=tenant_id, page=page, limit=limit,
    )
    return paged([LeaseResponse.model_validate(lease) for lease in items], total, page, limit)


@router.post("", response_model=Envelope[LeaseResponse], status_code=201)
async def create_lease(
    payload: LeaseCreate,
    principal: Principal = Depends(get_current_principal),
    leases: LeaseRegistry = Depends(get_lease_registry),
    deadline: Deadline = Depends(get_deadline),
):
    lease = await leases.uow.run(lambda: leases.create(principal, payload), deadline)
    return ok(LeaseResponse.model_validate(lease), "Lease created")


@router.get("/expiring", response_model=Envelope[list[LeaseResponse]])
async def expiring_leases(
    horizon_days: int = Query(settings.expiring_lease_horizon_days, ge=1, le=3650),
    principal: Principal = Depends(get_current_principal),
    leases: LeaseRegistry = Depends(get_lease_registry),
):
    items = await leases.expiring(principal, horizon_days)
    return ok([LeaseResponse.model_validate(lease) for lease in items])


@router.get("/{lease_id}", response_model=Envelope[LeaseResponse])
async def get_lease(
    lease_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    leases: LeaseRegistry = Depends(get_lease_registry),
):
    return ok(LeaseResponse.model_validate(await leases.get(principal, lease_id)))


@router.put("/{lease_id}", response_model=Envelope[LeaseResponse])
async def update_lease(
    lease_id: uuid.UUID,
    payload: LeaseUpdate,
    principal: Principal = Depends(get_current_principal),
    leases: LeaseRegistry = Depends(get_lease_registry),
    deadline: Deadline = Depends(get_deadline),
):
    lease = await leases.uow.run(lambda: leases.update(principal, lease_id, payload), deadline)
    return ok(LeaseResponse.model_validate(lease), "Lease updated")


@router.delete("/{lease_id}", response_model=Envelope[LeaseResponse])
async def delete_lease(
    lease_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    leases: LeaseRegistry = Depends(get_lease_registry),
    deadline: Deadline = Depends(get_deadline),
):
    lease = await leases.uow.run(lambda: leases.delete(principal, lease_id), deadline)
    return ok(LeaseResponse.model_validate(lease), "Lease deleted")


@router.put("/{lease_id}/mark-renewal-sent", response_model=Envelope[LeaseResponse])
async def mark_renewal_sent(
    lease_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    leases: LeaseRegistry = Depends(get_lease_registry),
    deadline: Deadline = Depends(get_deadline),
):
    lease = await leases.uow.run(lambda: leases.mark_renewal_notice_sent(principal, lease_id), deadline)
    return ok(LeaseResponse.model_validate(lease), "Renewal notice marked as sent")


# ─── Documents ───────────────────────────────────────────────────────────────

@router.post("/{lease_id}/documents", response_model=Envelope[MediaResponse], status_code=201)
async def upload_lease_document(
    lease_id: uuid.UUID,
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_principal),
    leases: LeaseRegistry = Depends(get_lease_registry),
    deadline: Deadline = Depends(get_deadline),
):
    incoming = await read_upload(file)
    media = await leases.uow.run(lambda: leases.attach_document(principal, lease_id, incoming), deadline)
    return ok(MediaResponse.model_validate(media), "Document attached")


@router.post("/{lease_id}/generate-document", response_model=Envelope[MediaResponse], status_code=201)
async def generate_lease_document(
    lease_id: uuid.UUID,
    payload: GenerateDocumentRequest,
    principal: Principal = Depends(get_current_principal),
    leases: LeaseRegistry = Depends(get_lease_registry),
    deadline: Deadline = Depends(get_deadline),
):
    media = await leases.uow.run(
        lambda: leases.generate_document(principal, lease_id, payload.document_type, payload.notes),
        deadline,
    )
    return ok(MediaResponse.model_validate(media), "Document generated")


@router.get("/{lease_id}/documents/{document_id}/download", response_model=Envelope[LeaseDocumentDownload])
async def download_lease_document(
    lease_id: uuid.UUID,
    document_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    leases: LeaseRegistry = Depends(get_lease_registry),
):
    url, ttl, media = await leases.download_document(principal, lease_id, document_id)
    return ok(LeaseDocumentDownload(
        url=url, expires_in=ttl, filename=media.filename, content_type=media.content_type,
    ))


# ─── Amendments ──────────────────────────────────────────────────────────────

@router.post("/{lease_id}/amendments", response_model=Envelope[LeaseResponse], status_code=201)
async def add_lease_amendment(
    lease_id: uuid.UUID,
    payload: LeaseAmendmentCreate,
    principal: Principal = Depends(get_current_principal),
    leases: LeaseRegistry = Depends(get_lease_registry),
    deadline: Deadline = Depends(get_deadline),
):
    lease = await leases.uow.run(lambda: leases.add_amendment(principal, lease_id, payload), deadline)
    return ok(LeaseResponse.model_validate(lease), "Amendment added")


# ─── Rent report ─────────────────────────────────────────────────────────────

@router.get("/{lease_id}/rent-report", response_model=Envelope[LeaseRentReportResponse])
async def lease_rent_report(
    lease_id: uuid.UUID,
    start: date | None = None,
    end: date | None = None,
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    clock: Clock = Depends(get_clock),
):
    report = await ledger.lease_rent_report(principal, lease_id, start, end)
    today = clock.today()
    return ok(LeaseRentReportResponse(
        **{k: v for k, v in report.items() if k != "records"},
        records=[RentRecordResponse.from_record(r, today) for r in report["records"]],
    ))


@router.post("/{lease_id}/rent-report/pdf", response_model=Envelope[MediaResponse], status_code=201)
async def lease_rent_report_pdf(
    lease_id: uuid.UUID,
    start: date | None = None,
    end: date | None = None,
    principal: Principal = Depends(get_current_principal),
    ledger: RentLedger = Depends(get_rent_ledger),
    deadline: Deadline = Depends(get_deadline),
):
    media = await ledger.uow.run(lambda: ledger.rent_report_pdf(principal, lease_id, start, end), deadline)
    return ok(MediaResponse.model_validate(media), "Rent report generated")
