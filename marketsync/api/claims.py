"""
Claim detail endpoint. Accepts the local id, the marketplace claim id, or
a claim item id.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.database import get_db
from marketsync.errors import ConnectionNotFoundError
from marketsync.services.claims import get_claim_detail

router = APIRouter(prefix="/api/v1", tags=["claims"])


@router.get("/connections/{connection_id}/claims/{ref}")
async def claim_detail(
    connection_id: str,
    ref: str,
    db: AsyncSession = Depends(get_db),
):
    try:
        detail = await get_claim_detail(db, connection_id, ref)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    if detail is None:
        raise HTTPException(status_code=404, detail="Claim not found")
    return detail
