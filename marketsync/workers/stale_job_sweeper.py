"""
Stale job sweeper - fails jobs left behind by a crashed worker.

- running longer than stale_job_timeout_minutes -> failed "abandoned"
- queued longer than the same timeout            -> failed "abandoned"
The matching cursor (if still running) is failed. A linked command that
never started fails as "local" so the same key can be resubmitted; one
that was running fails as "permanent", since its remote call may have
landed. The job's connection lock is released.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, or_, select

from marketsync.models.command import Command
from marketsync.models.enums import (
    CommandStatus,
    CursorStatus,
    ErrorClass,
    JobStatus,
    command_transition,
    job_transition,
)
from marketsync.models.job import Job
from marketsync.models.sync_cursor import SyncCursor
from marketsync.services.job_queue import JobQueue, get_job_queue
from marketsync.utils.locks import LockToken

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 300  # 5 minutes
ABANDONED = "abandoned"


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from marketsync.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(
            "marketsync:worker_health:stale_job_sweeper",
            datetime.now(timezone.utc).isoformat(),
            ex=900,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def sweep_stale_jobs(queue: JobQueue, now: Optional[datetime] = None) -> int:
    """Fail stale jobs. Returns the number of jobs swept."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=queue.settings.stale_job_timeout_minutes)
    tokens: list[LockToken] = []

    async with queue.session_factory() as db:
        result = await db.execute(
            select(Job).where(
                or_(
                    and_(Job.status == JobStatus.RUNNING.value, Job.started_at < cutoff),
                    and_(Job.status == JobStatus.QUEUED.value, Job.created_at < cutoff),
                )
            ).limit(100)
        )
        stale = result.scalars().all()

        for job in stale:
            logger.warning(
                "Stale job found: %s (%s) in %s", str(job.id)[:8], job.job_type, job.status,
                extra={"job_id": str(job.id), "connection_id": str(job.connection_id)},
            )
            job.status = job_transition(job.status, JobStatus.FAILED)
            job.error = ABANDONED
            job.finished_at = now
            if job.lock_token:
                tokens.append(LockToken(str(job.connection_id), job.lock_token))

            cursors = await db.execute(
                select(SyncCursor).where(
                    SyncCursor.last_job_id == job.id,
                    SyncCursor.last_status == CursorStatus.RUNNING.value,
                )
            )
            for cursor in cursors.scalars().all():
                cursor.last_status = CursorStatus.FAILED.value
                cursor.last_error = ABANDONED

            commands = await db.execute(
                select(Command).where(
                    Command.job_id == job.id,
                    Command.status.in_([CommandStatus.QUEUED.value, CommandStatus.RUNNING.value]),
                )
            )
            for command in commands.scalars().all():
                # A running command may already have reached the remote
                classification = (
                    ErrorClass.PERMANENT if command.status == CommandStatus.RUNNING.value else ErrorClass.LOCAL
                )
                command.status = command_transition(command.status, CommandStatus.FAILED)
                command.error = {
                    "classification": classification.value,
                    "status_code": None,
                    "body": None,
                    "message": ABANDONED,
                }

        if stale:
            await db.commit()

    for token in tokens:
        await queue.lock_manager.release(token)
    return len(stale)


async def run_stale_job_sweeper(queue: Optional[JobQueue] = None):
    """Main sweeper loop. Runs continuously every 5 minutes."""
    queue = queue or get_job_queue()
    logger.info("Stale job sweeper started")

    while True:
        try:
            found = await sweep_stale_jobs(queue)
            if found > 0:
                logger.info("Stale job sweeper failed %d abandoned jobs", found)
        except Exception as e:
            logger.error("Stale job sweeper error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
