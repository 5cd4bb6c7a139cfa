"""
Claim detail lookup.

A reference resolves in this order, always scoped to the connection:
1. claim primary key
2. claim remote id
3. claim item primary key, then claim item remote id (returns the parent)
so any identifier shown in a claim listing opens the same detail record.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.models.audit_entry import AuditEntry
from marketsync.models.claim import Claim, ClaimItem
from marketsync.services.connections import load_connection

logger = logging.getLogger(__name__)


def _parse_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


async def find_claim(db: AsyncSession, connection_id, ref: str) -> tuple[Optional[Claim], Optional[str]]:
    """Return (claim, matched_by) or (None, None)."""
    connection = await load_connection(db, connection_id)
    ref = str(ref).strip()
    pk = _parse_uuid(ref)

    if pk is not None:
        claim = await db.get(Claim, pk)
        if claim is not None and claim.connection_id == connection.id:
            return claim, "id"

    result = await db.execute(
        select(Claim).where(Claim.connection_id == connection.id, Claim.remote_id == ref)
    )
    claim = result.scalars().first()
    if claim is not None:
        return claim, "remote_id"

    item = None
    if pk is not None:
        item = await db.get(ClaimItem, pk)
        if item is not None and item.connection_id != connection.id:
            item = None
    if item is None:
        result = await db.execute(
            select(ClaimItem).where(ClaimItem.connection_id == connection.id, ClaimItem.remote_id == ref)
        )
        item = result.scalars().first()
    if item is not None:
        return await db.get(Claim, item.claim_db_id), "item"

    return None, None


async def get_claim_detail(db: AsyncSession, connection_id, ref: str) -> Optional[dict]:
    claim, matched_by = await find_claim(db, connection_id, ref)
    if claim is None:
        logger.info("Claim not found: connection=%s ref=%s", str(connection_id)[:8], ref)
        return None

    entity_ids = [claim.id] + [item.id for item in claim.items]
    result = await db.execute(
        select(AuditEntry)
        .where(AuditEntry.entity_id.in_(entity_ids))
        .order_by(AuditEntry.occurred_at)
    )
    history = [
        {
            "entityType": entry.entity_type,
            "entityId": str(entry.entity_id),
            "field": entry.field,
            "previous": entry.previous_value,
            "new": entry.new_value,
            "executorApp": entry.executor_app,
            "executorUser": entry.executor_user,
            "commandId": str(entry.command_id) if entry.command_id else None,
            "occurredAt": entry.occurred_at.isoformat() if entry.occurred_at else None,
        }
        for entry in result.scalars().all()
    ]

    return {
        "id": str(claim.id),
        "remoteId": claim.remote_id,
        "matchedBy": matched_by,
        "orderNumber": claim.order_number,
        "status": claim.status,
        "claimDate": claim.claim_date.isoformat() if claim.claim_date else None,
        "items": [
            {
                "id": str(item.id),
                "remoteId": item.remote_id,
                "barcode": item.barcode,
                "quantity": item.quantity,
                "status": item.item_status,
                "reasonCode": item.reason_code,
                "reasonName": item.reason_name,
            }
            for item in claim.items
        ],
        "history": history,
        "raw": claim.raw,
    }
