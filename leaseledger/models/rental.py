import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leaseledger.core.database import Base, JSONType, utcnow


class Lease(Base):
    """Defines occupancy and rent terms for a unit."""
    __tablename__ = "leases"
    __table_args__ = (
        Index("ix_leases_property_status", "property_id", "status"),
        Index("ix_leases_tenant_status", "tenant_id", "status"),
        Index("ix_leases_unit_status", "unit_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("properties.id"))
    unit_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("units.id"))
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"))
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date] = mapped_column(Date)
    monthly_rent: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    payment_due_day: Mapped[int] = mapped_column(Integer, default=1)
    security_deposit: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(20), default="active")  # active | pending_renewal | renewed | terminated | expired
    terms: Mapped[str | None] = mapped_column(Text)
    renewal_notice_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    last_renewal_notice_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    documents: Mapped[list] = mapped_column(JSONType, default=list)  # media ids
    # [{id, description, document_id, amendment_date, created_by}]
    amendments: Mapped[list] = mapped_column(JSONType, default=list)
    terminated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    terminated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    termination_reason: Mapped[str | None] = mapped_column(Text)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    updated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class RentSchedule(Base):
    """Recurring rent definition for a lease. Disabled softly so generation
    stays idempotent; at most one active row per lease."""
    __tablename__ = "rent_schedules"
    __table_args__ = (
        Index("ix_rent_schedules_lease_active", "lease_id", "is_active"),
        Index(
            "uq_rent_schedules_active_lease",
            "lease_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("leases.id"))
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    currency: Mapped[str] = mapped_column(String(3))
    cadence: Mapped[str] = mapped_column(String(20), default="monthly")  # monthly | weekly | biweekly | quarterly | yearly
    day_of_cycle: Mapped[int] = mapped_column(Integer, default=1)
    anchor_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Per-record amounts kept when a rent change could not be applied
    overrides: Mapped[list] = mapped_column(JSONType, default=list)
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class RentRecord(Base):
    """The obligation for one billing period of one lease."""
    __tablename__ = "rent_records"
    __table_args__ = (
        UniqueConstraint("lease_id", "billing_period", name="uq_rent_records_lease_period"),
        Index("ix_rent_records_due_date_status", "due_date", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("leases.id"))
    billing_period: Mapped[str] = mapped_column(String(16))  # "2024-03", "2024-W09", "2024-Q1", "2024"
    due_date: Mapped[date] = mapped_column(Date)
    amount_due: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String(20), default="due")  # due | partially_paid | paid | waived | cancelled
    payment_proof_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("media.id"))
    notes: Mapped[str | None] = mapped_column(Text)
    status_reason: Mapped[str | None] = mapped_column(Text)  # waive / cancel reason
    overdue_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    payments: Mapped[list["RentPayment"]] = relationship(
        back_populates="rent_record",
        order_by="RentPayment.sequence",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    # Every UPDATE checks and bumps the version (compare-and-swap)
    __mapper_args__ = {"version_id_col": version}


class RentPayment(Base):
    """Immutable payment entry, ordered by ``sequence`` within its record."""
    __tablename__ = "rent_payments"
    __table_args__ = (
        UniqueConstraint("rent_record_id", "sequence", name="uq_rent_payments_record_sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    rent_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("rent_records.id", ondelete="CASCADE"), index=True
    )
    sequence: Mapped[int] = mapped_column(Integer)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    credited_excess: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    payment_date: Mapped[date] = mapped_column(Date)
    method: Mapped[str] = mapped_column(String(30))  # cash | check | bank_transfer | ...
    transaction_id: Mapped[str | None] = mapped_column(String(255))
    proof_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("media.id"))
    notes: Mapped[str | None] = mapped_column(Text)
    recorded_by_kind: Mapped[str] = mapped_column(String(10), default="user")  # user | vendor
    recorded_by_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    rent_record: Mapped[RentRecord] = relationship(back_populates="payments")
