import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from leaseledger.models.enums import Cadence, DocumentType, LeaseStatus

CURRENCY_PATTERN = r"^[A-Z]{3}$"


def _upper_currency(v: str | None) -> str | None:
    return v.strip().upper() if isinstance(v, str) else v


# ─── Rent schedule ─────────────────────────────────────────────────────────

class ScheduleSpec(BaseModel):
    amount: Decimal = Field(ge=0, decimal_places=2)
    currency: str | None = Field(default=None, pattern=CURRENCY_PATTERN)  # defaults to the lease currency
    cadence: Cadence = Cadence.MONTHLY
    day_of_cycle: int | None = Field(default=None, ge=1, le=31)  # defaults to the lease due day
    anchor_date: date | None = None  # defaults to the lease start
    end_date: date | None = None
    notes: str | None = None

    @field_validator("currency", mode="before")
    @classmethod
    def normalise_currency(cls, v):
        return _upper_currency(v)

    @model_validator(mode="after")
    def validate_window(self) -> "ScheduleSpec":
        if self.anchor_date and self.end_date and self.end_date < self.anchor_date:
            raise ValueError("end_date must be on or after anchor_date")
        return self


class RentScheduleCreate(ScheduleSpec):
    lease_id: uuid.UUID


class RentScheduleUpdate(BaseModel):
    amount: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    cadence: Cadence | None = None
    day_of_cycle: int | None = Field(default=None, ge=1, le=31)
    anchor_date: date | None = None
    end_date: date | None = None
    notes: str | None = None


class RentScheduleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    lease_id: uuid.UUID
    amount: Decimal
    currency: str
    cadence: Cadence
    day_of_cycle: int
    anchor_date: date
    end_date: date | None
    is_active: bool
    overrides: list[dict]
    notes: str | None
    created_by: uuid.UUID | None
    created_at: datetime
    updated_at: datetime


# ─── Lease ─────────────────────────────────────────────────────────────────

class LeaseCreate(BaseModel):
    property_id: uuid.UUID
    unit_id: uuid.UUID
    tenant_id: uuid.UUID
    start_date: date
    end_date: date
    monthly_rent: Decimal = Field(ge=0, decimal_places=2)
    currency: str = Field(default="USD", pattern=CURRENCY_PATTERN)
    payment_due_day: int = Field(default=1, ge=1, le=31)
    security_deposit: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    status: LeaseStatus = LeaseStatus.ACTIVE
    terms: str | None = None
    # Create the tenant's property association in the same transaction
    create_association: bool = False
    schedule: ScheduleSpec | None = None

    @field_validator("currency", mode="before")
    @classmethod
    def normalise_currency(cls, v):
        return _upper_currency(v)

    @model_validator(mode="after")
    def validate_dates(self) -> "LeaseCreate":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class LeaseUpdate(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    monthly_rent: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    payment_due_day: int | None = Field(default=None, ge=1, le=31)
    security_deposit: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    status: LeaseStatus | None = None
    terms: str | None = None
    termination_reason: str | None = None


class LeaseAmendmentCreate(BaseModel):
    description: str = Field(min_length=1, max_length=2000)
    document_id: uuid.UUID | None = None  # must already be one of the lease's documents
    amendment_date: date | None = None  # defaults to today

    @field_validator("description", mode="before")
    @classmethod
    def strip_description(cls, v):
        return v.strip() if isinstance(v, str) else v


class LeaseAmendment(BaseModel):
    id: uuid.UUID
    description: str
    document_id: uuid.UUID | None = None
    amendment_date: date
    created_by: uuid.UUID | None = None
    created_at: datetime


class LeaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    property_id: uuid.UUID
    unit_id: uuid.UUID
    tenant_id: uuid.UUID
    start_date: date
    end_date: date
    monthly_rent: Decimal
    currency: str
    payment_due_day: int
    security_deposit: Decimal
    status: LeaseStatus
    terms: str | None
    renewal_notice_sent: bool
    last_renewal_notice_at: datetime | None
    documents: list[str]
    amendments: list[LeaseAmendment] = []
    terminated_at: datetime | None
    terminated_by: uuid.UUID | None
    termination_reason: str | None
    created_by: uuid.UUID | None
    updated_by: uuid.UUID | None
    created_at: datetime
    updated_at: datetime


class GenerateDocumentRequest(BaseModel):
    document_type: DocumentType = DocumentType.LEASE_AGREEMENT
    notes: str | None = None


class LeaseDocumentDownload(BaseModel):
    url: str
    expires_in: int
    filename: str
    content_type: str
