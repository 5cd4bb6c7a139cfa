"""
Job worker pool - a fixed number of asyncio tasks draining the job queue.
Each job runs under its own correlation id; a crashing job is recorded on
its row by the queue and never takes the worker down.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from marketsync.services.job_queue import JobQueue, get_job_queue
from marketsync.utils.logging import generate_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)


async def _heartbeat(index: int):
    """Store heartbeat timestamp in Redis."""
    try:
        from marketsync.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(
            f"marketsync:worker_health:job_worker:{index}",
            datetime.now(timezone.utc).isoformat(),
            ex=600,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def _worker_loop(queue: JobQueue, index: int) -> None:
    logger.info("Job worker %d started", index)
    while True:
        job_id = await queue.next_job_id()
        set_correlation_id(generate_correlation_id())
        try:
            await queue.run_job(job_id)
        except Exception as e:
            logger.error("Job worker %d error on job %s: %s", index, str(job_id)[:8], str(e), exc_info=True)
        finally:
            queue.task_done()
        await _heartbeat(index)


async def run_job_workers(queue: Optional[JobQueue] = None, size: Optional[int] = None) -> None:
    """Run `size` workers until cancelled."""
    queue = queue or get_job_queue()
    size = size or queue.settings.worker_pool_size
    workers = [asyncio.create_task(_worker_loop(queue, i)) for i in range(size)]
    try:
        await asyncio.gather(*workers)
    finally:
        for worker in workers:
            worker.cancel()
