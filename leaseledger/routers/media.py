from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leaseledger.core.database import get_db
from leaseledger.core.errors import AccessDenied, NotFound
from leaseledger.core.security import verify_download_token
from leaseledger.models.media import Media
from leaseledger.services.storage import ObjectStorage, get_storage

router = APIRouter(prefix="/media", tags=["media"])


@router.get("/{public_id:path}")
async def download_media(
    public_id: str,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
):
    """Serve a stored file to the holder of a signed download link."""
    if not verify_download_token(token, public_id):
        raise AccessDenied("Download link is invalid or has expired")

    media = await db.scalar(select(Media).where(Media.public_id == public_id))
    if media is None:
        raise NotFound("File not found")
    content = storage.read(public_id)
    if content is None:
        raise NotFound("File not found")

    return Response(
        content=content,
        media_type=media.content_type,
        headers={"Content-Disposition": f'attachment; filename="{media.filename}"'},
    )
