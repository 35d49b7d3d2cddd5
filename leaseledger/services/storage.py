"""
Object storage port.

``LocalObjectStorage`` keeps objects under ``settings.upload_dir``, encrypted
at rest with Fernet. Downloads go through ``/api/v1/media/{public_id}`` with a
short-lived signed token.
"""

import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from fastapi import UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from leaseledger.core.config import settings
from leaseledger.core.errors import ValidationFailed
from leaseledger.core.security import create_download_token, decrypt_bytes, encrypt_bytes
from leaseledger.models.media import Media

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1 MB streaming chunks

_ALLOWED: dict[str, str] = {
    "pdf":  "application/pdf",
    "doc":  "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "png":  "image/png",
    "jpg":  "image/jpeg",
    "jpeg": "image/jpeg",
    "heic": "image/heic",
    "webp": "image/webp",
}

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class StoredObject:
    public_id: str
    url: str
    size: int


class ObjectStorage(ABC):
    @abstractmethod
    def upload(self, data: bytes, mime: str, name: str, folder: str,
               tags: list[str] | None = None) -> StoredObject:
        ...

    @abstractmethod
    def signed_download_url(self, public_id: str, ttl: int) -> str:
        ...

    @abstractmethod
    def read(self, public_id: str) -> bytes | None:
        ...

    @abstractmethod
    def delete(self, public_id: str) -> None:
        ...


class LocalObjectStorage(ObjectStorage):
    def __init__(self, root: str | None = None, base_url: str | None = None):
        self.root = Path(root or settings.upload_dir)
        self.base_url = (base_url or settings.public_api_url).rstrip("/")

    def _path(self, public_id: str) -> Path:
        path = (self.root / public_id).resolve()
        if self.root.resolve() not in path.parents:
            raise ValidationFailed("Invalid object id")
        return path

    def _url(self, public_id: str) -> str:
        return f"{self.base_url}/api/v1/media/{quote(public_id)}"

    def upload(self, data, mime, name, folder, tags=None) -> StoredObject:
        safe_name = (_UNSAFE.sub("_", Path(name).name) or "upload")[-100:]
        public_id = f"{_UNSAFE.sub('_', folder)}/{uuid.uuid4().hex}_{safe_name}"
        path = self._path(public_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(encrypt_bytes(data))
        logger.info("Stored %s (%d bytes, %s)", public_id, len(data), mime)
        return StoredObject(public_id=public_id, url=self._url(public_id), size=len(data))

    def signed_download_url(self, public_id: str, ttl: int) -> str:
        token = create_download_token(public_id, ttl)
        return f"{self._url(public_id)}?token={token}"

    def read(self, public_id: str) -> bytes | None:
        path = self._path(public_id)
        if not path.exists():
            return None
        return decrypt_bytes(path.read_bytes())

    def delete(self, public_id: str) -> None:
        self._path(public_id).unlink(missing_ok=True)


def get_storage() -> ObjectStorage:
    return LocalObjectStorage()


# ─── Upload helpers ──────────────────────────────────────────────────────────

def validate_upload(filename: str) -> str:
    """Return the MIME type for an allowed file, or raise ``ValidationFailed``."""
    ext = Path(filename).suffix.lstrip(".").lower()
    mime = _ALLOWED.get(ext)
    if mime is None:
        allowed = ", ".join(sorted(_ALLOWED))
        raise ValidationFailed(
            f"File type '.{ext}' is not allowed. Allowed: {allowed}",
            details=[{"field": "file", "message": "unsupported file type"}],
        )
    return mime


@dataclass(frozen=True)
class IncomingFile:
    filename: str
    content_type: str
    data: bytes


async def read_upload(file: UploadFile) -> IncomingFile:
    """Read an upload in chunks, enforcing the size limit."""
    filename = file.filename or "upload"
    mime = validate_upload(filename)
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await file.read(CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if total > settings.max_upload_bytes:
            raise ValidationFailed(
                f"File too large (max {settings.max_upload_bytes // (1024 * 1024)} MB)",
                details=[{"field": "file", "message": "file too large"}],
            )
        chunks.append(chunk)
    if total == 0:
        raise ValidationFailed("Uploaded file is empty", details=[{"field": "file", "message": "empty file"}])
    return IncomingFile(filename=filename, content_type=mime, data=b"".join(chunks))


def store_media(
    db: AsyncSession,
    storage: ObjectStorage,
    incoming: IncomingFile,
    *,
    folder: str,
    uploaded_by: uuid.UUID | None,
    document_type: str | None = None,
    tags: list[str] | None = None,
) -> Media:
    """Upload to the storage port and stage the matching ``Media`` row."""
    stored = storage.upload(incoming.data, incoming.content_type, incoming.filename, folder, tags)
    media = Media(
        id=uuid.uuid4(),
        public_id=stored.public_id,
        url=stored.url,
        filename=incoming.filename[:255],
        content_type=incoming.content_type,
        file_size=stored.size,
        folder=folder,
        document_type=document_type,
        tags=list(tags or []),
        uploaded_by=uploaded_by,
    )
    db.add(media)
    return media


def discard_object(storage: ObjectStorage, public_id: str) -> None:
    """Best-effort removal of a replaced object."""
    try:
        storage.delete(public_id)
    except OSError as e:
        logger.warning("Could not delete stored object %s: %s", public_id, e)
