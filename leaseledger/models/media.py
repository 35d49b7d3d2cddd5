import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from leaseledger.core.database import Base, JSONType, utcnow


class Media(Base):
    """Metadata for an object held by the storage port (proofs, lease documents,
    generated PDFs)."""
    __tablename__ = "media"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    public_id: Mapped[str] = mapped_column(String(255), unique=True)
    url: Mapped[str] = mapped_column(String(1024))
    filename: Mapped[str] = mapped_column(String(255))
    content_type: Mapped[str] = mapped_column(String(100))
    file_size: Mapped[int] = mapped_column(Integer)
    folder: Mapped[str] = mapped_column(String(100))
    document_type: Mapped[str | None] = mapped_column(String(30))
    tags: Mapped[list] = mapped_column(JSONType, default=list)
    uploaded_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
