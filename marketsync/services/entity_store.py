"""
Upsert-by-natural-key for mirrored entities, with audit of status changes.

Callers hold the connection lock, so select-then-write is race free per
connection; the unique constraint on (connection_id, marketplace,
remote_id) is the backstop. An upsert whose input matches the stored row
writes nothing: no audit row, updated_at untouched.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.models.audit_entry import AuditEntry, EXECUTOR_REMOTE_SYNC
from marketsync.services.sync_window import as_utc

logger = logging.getLogger(__name__)

INSERTED = "inserted"
UPDATED = "updated"
UNCHANGED = "unchanged"


@dataclass
class UpsertResult:
    action: str
    entity: Any
    previous_status: Optional[str] = None
    new_status: Optional[str] = None


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, datetime) or isinstance(b, datetime):
        return as_utc(a) == as_utc(b)
    return a == b


def append_audit(
    db: AsyncSession,
    *,
    connection_id,
    marketplace: str,
    entity_type: str,
    entity_id,
    previous_value: Optional[str],
    new_value: Optional[str],
    executor_app: str,
    executor_user: Optional[str] = None,
    command_id=None,
    evidence: Optional[dict] = None,
    field: str = "status",
) -> AuditEntry:
    """Append one immutable audit row."""
    entry = AuditEntry(
        connection_id=connection_id,
        marketplace=marketplace,
        entity_type=entity_type,
        entity_id=entity_id,
        field=field,
        previous_value=previous_value,
        new_value=new_value,
        executor_app=executor_app,
        executor_user=executor_user,
        command_id=command_id,
        evidence=evidence,
    )
    db.add(entry)
    return entry


async def find_entity(db: AsyncSession, model, connection_id, marketplace: str, remote_id: str):
    result = await db.execute(
        select(model).where(
            model.connection_id == connection_id,
            model.marketplace == marketplace,
            model.remote_id == remote_id,
        )
    )
    return result.scalar_one_or_none()


async def upsert_entity(
    db: AsyncSession,
    model,
    *,
    connection_id,
    marketplace: str,
    remote_id: str,
    fields: dict,
    raw: dict,
    entity_type: str,
    status_field: Optional[str] = None,
) -> UpsertResult:
    """Insert or update one mirrored record; audit status transitions observed remotely."""
    existing = await find_entity(db, model, connection_id, marketplace, remote_id)

    if existing is None:
        entity = model(
            connection_id=connection_id,
            marketplace=marketplace,
            remote_id=remote_id,
            raw=raw,
            **fields,
        )
        db.add(entity)
        await db.flush()
        new_status = fields.get(status_field) if status_field else None
        if new_status is not None:
            append_audit(
                db,
                connection_id=connection_id,
                marketplace=marketplace,
                entity_type=entity_type,
                entity_id=entity.id,
                previous_value=None,
                new_value=new_status,
                executor_app=EXECUTOR_REMOTE_SYNC,
                evidence={"remote_id": remote_id},
            )
        return UpsertResult(action=INSERTED, entity=entity, new_status=new_status)

    changed = {
        name: value for name, value in fields.items()
        if not _same(getattr(existing, name), value)
    }
    if not changed and existing.raw == raw:
        return UpsertResult(action=UNCHANGED, entity=existing)

    previous_status = getattr(existing, status_field) if status_field else None
    for name, value in changed.items():
        setattr(existing, name, value)
    existing.raw = raw
    existing.updated_at = datetime.now(timezone.utc)

    new_status = getattr(existing, status_field) if status_field else None
    if status_field and status_field in changed:
        append_audit(
            db,
            connection_id=connection_id,
            marketplace=marketplace,
            entity_type=entity_type,
            entity_id=existing.id,
            previous_value=previous_status,
            new_value=new_status,
            executor_app=EXECUTOR_REMOTE_SYNC,
            evidence={"remote_id": remote_id},
        )
    return UpsertResult(
        action=UPDATED, entity=existing,
        previous_status=previous_status, new_status=new_status,
    )
