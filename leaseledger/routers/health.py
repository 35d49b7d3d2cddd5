from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leaseledger.core.database import get_db
from leaseledger.models.rental import RentRecord

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/health/db")
async def health_db(db: AsyncSession = Depends(get_db)):
    # fails when the schema has not been migrated, not only when the server is down
    await db.execute(select(RentRecord.id).limit(1))
    return {"status": "ok", "database": "connected", "rent_records": "reachable"}
