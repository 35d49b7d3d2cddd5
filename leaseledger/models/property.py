import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from leaseledger.core.database import Base, JSONType, utcnow


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255))
    address: Mapped[str | None] = mapped_column(String(500))
    city: Mapped[str | None] = mapped_column(String(100))
    state: Mapped[str | None] = mapped_column(String(50))
    zip_code: Mapped[str | None] = mapped_column(String(20))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Unit(Base):
    """A rentable unit within a property (even a SFH can be 1 unit).

    The current lease is derived from ``leases``, never stored here.
    """
    __tablename__ = "units"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), index=True
    )
    unit_label: Mapped[str] = mapped_column(String(50))  # "Unit 1", "A", "Main", etc.
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PropertyUser(Base):
    """Association between a principal and a property (optionally a unit),
    carrying one or more property-scoped roles."""
    __tablename__ = "property_users"
    __table_args__ = (
        Index("ix_property_users_user_active", "user_id", "is_active"),
        # One active tenant association per unit
        Index(
            "uq_property_users_active_tenant_unit",
            "unit_id",
            unique=True,
            postgresql_where=text("is_active AND is_tenant"),
            sqlite_where=text("is_active = 1 AND is_tenant = 1"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"))
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), index=True
    )
    unit_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("units.id"))
    roles: Mapped[list] = mapped_column(JSONType, default=list)  # landlord | property_manager | tenant | vendor
    # Denormalised from roles so the partial unique index can see it
    is_tenant: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
