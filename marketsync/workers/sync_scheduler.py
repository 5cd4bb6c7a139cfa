"""
Sync scheduler - periodically submits due sync jobs.

A resource is due when its cursor has never been attempted or its last
attempt is older than sync_min_interval_seconds. Only the most overdue
resource per connection is submitted per pass, since the connection lock
admits one job at a time anyway.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select

from marketsync.models.connection import Connection
from marketsync.models.enums import CursorStatus
from marketsync.models.sync_cursor import SyncCursor
from marketsync.services.job_queue import JobQueue, get_job_queue
from marketsync.services.sync_resources import SYNC_RESOURCES
from marketsync.services.sync_window import as_utc

logger = logging.getLogger(__name__)


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from marketsync.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(
            "marketsync:worker_health:sync_scheduler",
            datetime.now(timezone.utc).isoformat(),
            ex=600,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


def pick_due_resource(cursors: dict, now: datetime, min_interval: timedelta) -> Optional[str]:
    """Most overdue windowed resource, or None if nothing is due."""
    due: list[tuple[datetime, str]] = []
    for name, resource in SYNC_RESOURCES.items():
        if not resource.windowed:
            continue
        cursor = cursors.get(name)
        if cursor is None or cursor.last_attempt_at is None:
            due.append((datetime.min.replace(tzinfo=timezone.utc), name))
            continue
        if cursor.last_status == CursorStatus.RUNNING.value:
            continue
        last_attempt = as_utc(cursor.last_attempt_at)
        if now - last_attempt >= min_interval:
            due.append((last_attempt, name))
    if not due:
        return None
    return min(due)[1]


async def schedule_due_syncs(queue: JobQueue, now: Optional[datetime] = None) -> int:
    """One scheduling pass. Returns the number of jobs submitted."""
    now = now or datetime.now(timezone.utc)
    min_interval = timedelta(seconds=queue.settings.sync_min_interval_seconds)

    async with queue.session_factory() as db:
        result = await db.execute(select(Connection).where(Connection.status == "active"))
        connections = result.scalars().all()
        result = await db.execute(select(SyncCursor))
        cursors: dict = {}
        for cursor in result.scalars().all():
            cursors.setdefault(cursor.connection_id, {})[cursor.resource_type] = cursor
        targets = [
            (connection.id, pick_due_resource(cursors.get(connection.id, {}), now, min_interval))
            for connection in connections
        ]

    submitted = 0
    for connection_id, resource in targets:
        if resource is None:
            continue
        job_type = SYNC_RESOURCES[resource].job_type.value
        result = await queue.submit(connection_id, job_type, {"trigger": "scheduler"})
        if result.accepted:
            submitted += 1
        else:
            logger.info(
                "Scheduler skipped busy connection %s (%s)", str(connection_id)[:8], resource,
                extra={"connection_id": str(connection_id), "resource": resource},
            )
    return submitted


async def run_sync_scheduler(queue: Optional[JobQueue] = None):
    """Main scheduler loop."""
    queue = queue or get_job_queue()
    interval = queue.settings.scheduler_interval_seconds
    logger.info("Sync scheduler started (interval %ds)", interval)

    while True:
        try:
            submitted = await schedule_due_syncs(queue)
            if submitted:
                logger.info("Sync scheduler submitted %d jobs", submitted)
        except Exception as e:
            logger.error("Sync scheduler error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(interval)
