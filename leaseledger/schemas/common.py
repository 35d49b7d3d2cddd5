import math
import uuid
from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")

DEFAULT_LIMIT = 10
MAX_LIMIT = 100


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    message: str | None = None
    data: T


class PageEnvelope(BaseModel, Generic[T]):
    success: bool = True
    message: str | None = None
    data: list[T]
    count: int
    total: int
    page: int
    limit: int
    pages: int


def ok(data, message: str | None = None) -> dict:
    return {"success": True, "message": message, "data": data}


def paged(items: list, total: int, page: int, limit: int, message: str | None = None) -> dict:
    return {
        "success": True,
        "message": message,
        "data": items,
        "count": len(items),
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if limit else 0,
    }


# ─── Media ─────────────────────────────────────────────────────────────────

class MediaResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    public_id: str
    url: str
    filename: str
    content_type: str
    file_size: int
    document_type: str | None
    created_at: datetime


class SignedUrlResponse(BaseModel):
    url: str
    expires_in: int
