import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from leaseledger.models.enums import PaymentMethod, RentStatus
from leaseledger.models.rental import RentRecord
from leaseledger.services.status import effective_status


# ─── Rent record ───────────────────────────────────────────────────────────

class RentRecordCreate(BaseModel):
    lease_id: uuid.UUID
    billing_period: str = Field(min_length=4, max_length=16)
    due_date: date
    amount_due: Decimal = Field(ge=0, decimal_places=2)
    notes: str | None = None


class RentRecordUpdate(BaseModel):
    due_date: date | None = None
    amount_due: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    notes: str | None = None


class PaymentCreate(BaseModel):
    amount: Decimal = Field(gt=0, decimal_places=2)
    payment_date: date
    method: PaymentMethod = PaymentMethod.OTHER
    transaction_id: str | None = Field(default=None, max_length=255)
    currency: str | None = None
    notes: str | None = None


class StatusChangeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class RentPaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    sequence: int
    amount: Decimal
    credited_excess: Decimal
    payment_date: date
    method: str
    transaction_id: str | None
    proof_id: uuid.UUID | None
    notes: str | None
    recorded_by_kind: str
    recorded_by_id: uuid.UUID
    created_at: datetime


class RentRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    lease_id: uuid.UUID
    billing_period: str
    due_date: date
    amount_due: Decimal
    amount_paid: Decimal
    currency: str
    status: RentStatus
    payment_proof_id: uuid.UUID | None
    notes: str | None
    status_reason: str | None
    overdue_notified_at: datetime | None
    version: int
    created_by: uuid.UUID | None
    created_at: datetime
    updated_at: datetime
    payments: list[RentPaymentResponse]

    @classmethod
    def from_record(cls, record: RentRecord, today: date) -> "RentRecordResponse":
        """Response with the read-time status (``overdue`` is never stored)."""
        response = cls.model_validate(record)
        response.status = effective_status(record, today)
        return response


# ─── Generation ────────────────────────────────────────────────────────────

class GenerateRequest(BaseModel):
    target_date: date | None = None  # defaults to today
    force_generation: bool = False
    lease_id: uuid.UUID | None = None


class GenerationSummaryResponse(BaseModel):
    target_date: date
    generated: int
    skipped: int
    conflict: int
    failed: int
    interrupted: bool


# ─── Reports ───────────────────────────────────────────────────────────────

class HistoryGroup(BaseModel):
    billing_period: str
    records: list[RentRecordResponse]


class HistoryResponse(BaseModel):
    groups: list[HistoryGroup]
    next_cursor: str | None


class StatusBucket(BaseModel):
    count: int
    amount_due: Decimal
    amount_paid: Decimal


class LeaseRentReportResponse(BaseModel):
    lease_id: uuid.UUID
    currency: str
    start: date | None
    end: date | None
    total_due: Decimal
    total_collected: Decimal
    outstanding: Decimal
    status_summary: dict[str, StatusBucket]
    records: list[RentRecordResponse]
