"""
Read-side contract for polling: per-resource cursors and the latest job.
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.models.command import Command
from marketsync.models.job import Job
from marketsync.models.sync_cursor import SyncCursor
from marketsync.services.connections import as_uuid, load_connection
from marketsync.services.sync_resources import SYNC_RESOURCES


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_cursor(cursor: Optional[SyncCursor]) -> Optional[dict]:
    if cursor is None:
        return None
    return {
        "lastStatus": cursor.last_status,
        "lastSuccessAt": _iso(cursor.last_success_at),
        "lastAttemptAt": _iso(cursor.last_attempt_at),
        "lastJobId": str(cursor.last_job_id) if cursor.last_job_id else None,
        "lastError": cursor.last_error,
        "lastSummary": cursor.last_summary,
    }


def serialize_job(job: Optional[Job]) -> Optional[dict]:
    if job is None:
        return None
    return {
        "id": str(job.id),
        "connectionId": str(job.connection_id),
        "type": job.job_type,
        "status": job.status,
        "summary": job.result_summary,
        "error": job.error,
        "createdAt": _iso(job.created_at),
        "startedAt": _iso(job.started_at),
        "finishedAt": _iso(job.finished_at),
    }


def serialize_command(command: Command) -> dict:
    return {
        "commandId": str(command.id),
        "connectionId": str(command.connection_id),
        "type": command.command_type,
        "targetId": command.target_id,
        "idempotencyKey": command.idempotency_key,
        "writeMode": command.write_mode,
        "status": command.status,
        "jobId": str(command.job_id) if command.job_id else None,
        "attemptCount": command.attempt_count,
        "response": command.response,
        "error": command.error,
        "createdAt": _iso(command.created_at),
        "updatedAt": _iso(command.updated_at),
    }


async def get_status(db: AsyncSession, connection_id) -> dict:
    """
    {"connectionId", "cursors": {resource: cursor-or-None}, "lastJob": job-or-None}.
    Raises ConnectionNotFoundError for an unknown connection.
    """
    connection = await load_connection(db, connection_id)

    result = await db.execute(select(SyncCursor).where(SyncCursor.connection_id == connection.id))
    by_resource = {cursor.resource_type: cursor for cursor in result.scalars().all()}

    result = await db.execute(
        select(Job)
        .where(Job.connection_id == connection.id)
        .order_by(Job.created_at.desc())
        .limit(1)
    )
    last_job = result.scalar_one_or_none()

    return {
        "connectionId": str(connection.id),
        "cursors": {name: serialize_cursor(by_resource.get(name)) for name in SYNC_RESOURCES},
        "lastJob": serialize_job(last_job),
    }


async def get_job(db: AsyncSession, job_id) -> Optional[dict]:
    try:
        key = as_uuid(job_id)
    except ValueError:
        return None
    return serialize_job(await db.get(Job, key))


async def get_command(db: AsyncSession, command_id) -> Optional[dict]:
    try:
        key = as_uuid(command_id)
    except ValueError:
        return None
    command = await db.get(Command, key)
    return serialize_command(command) if command else None
