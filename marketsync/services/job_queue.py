"""
Job queue - admission, dispatch and terminal bookkeeping for jobs.

Submission takes the connection lock first; a busy connection is rejected
on the spot (no Job row, no waiting). The lock token is stored on the Job
row and released by whichever worker finishes the job, in a finally path.
Dispatch is an in-process asyncio.Queue drained by the worker pool.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import select

from marketsync.database import async_session_factory
from marketsync.errors import ConnectionBusyError, UnknownJobTypeError
from marketsync.models.enums import JobStatus, JobType, job_transition
from marketsync.models.job import Job
from marketsync.services.connections import as_uuid, build_client, load_connection
from marketsync.services.job_context import HandlerResult, JobContext
from marketsync.utils.locks import ConnectionLockManager, LockToken, get_lock_manager

logger = logging.getLogger(__name__)

Handler = Callable[[Job, JobContext], Awaitable[HandlerResult]]


@dataclass
class SubmitResult:
    job_id: Optional[str] = None
    rejected: Optional[str] = None
    active_job_id: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.job_id is not None

    def as_dict(self) -> dict:
        if self.accepted:
            return {"jobId": self.job_id}
        return {"rejected": self.rejected, "activeJobId": self.active_job_id}


def default_handlers() -> dict[str, Handler]:
    from marketsync.services.command_handler import execute_command
    from marketsync.services.sync_handler import run_sync

    handlers: dict[str, Handler] = {}
    for job_type in JobType:
        handlers[job_type.value] = run_sync if job_type.is_sync else execute_command
    return handlers


class JobQueue:
    def __init__(
        self,
        session_factory=async_session_factory,
        lock_manager: Optional[ConnectionLockManager] = None,
        handlers: Optional[dict[str, Handler]] = None,
        client_factory=build_client,
        settings=None,
        sleep=asyncio.sleep,
    ):
        if settings is None:
            from marketsync.config import get_settings
            settings = get_settings()
        self.session_factory = session_factory
        self.lock_manager = lock_manager or get_lock_manager()
        self.handlers = handlers if handlers is not None else default_handlers()
        self.settings = settings
        self.context = JobContext(
            session_factory=session_factory,
            client_factory=client_factory,
            settings=settings,
            sleep=sleep,
        )
        self._pending: asyncio.Queue = asyncio.Queue()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def reserve(self, connection_id, job_type: str, payload: Optional[dict] = None) -> Job:
        """
        Take the connection lock and create the Job row (queued).
        Raises ConnectionBusyError when another job holds the connection.
        """
        try:
            job_type = JobType(job_type).value
        except ValueError:
            raise UnknownJobTypeError(f"Unknown job type: {job_type}")
        if job_type not in self.handlers:
            raise UnknownJobTypeError(f"No handler for job type: {job_type}")

        async with self.session_factory() as db:
            connection = await load_connection(db, connection_id)
            connection_key = connection.id

        token = await self.lock_manager.acquire(str(connection_key))
        if token is None:
            active = await self.active_job_id(connection_key)
            raise ConnectionBusyError(str(connection_key), active)

        try:
            async with self.session_factory() as db:
                job = Job(
                    connection_id=connection_key,
                    job_type=job_type,
                    status=JobStatus.QUEUED.value,
                    request_payload=payload or {},
                    lock_token=token.value,
                )
                db.add(job)
                await db.commit()
        except Exception:
            await self.lock_manager.release(token)
            raise

        logger.info(
            "Job reserved: id=%s type=%s connection=%s",
            str(job.id)[:8], job_type, str(connection_key)[:8],
            extra={"job_id": str(job.id), "connection_id": str(connection_key)},
        )
        return job

    def dispatch(self, job_id) -> None:
        """Hand a reserved job to the worker pool."""
        self._pending.put_nowait(str(job_id))

    async def submit(self, connection_id, job_type: str, payload: Optional[dict] = None) -> SubmitResult:
        """Reserve and dispatch. A busy connection yields rejected="locked"."""
        try:
            job = await self.reserve(connection_id, job_type, payload)
        except ConnectionBusyError as e:
            return SubmitResult(rejected="locked", active_job_id=e.active_job_id)
        self.dispatch(job.id)
        return SubmitResult(job_id=str(job.id))

    async def enqueue(self, connection_id, job_type: str, payload: Optional[dict] = None) -> str:
        """Like submit, but raises ConnectionBusyError instead of returning a rejection."""
        job = await self.reserve(connection_id, job_type, payload)
        self.dispatch(job.id)
        return str(job.id)

    async def abandon(self, job_id, reason: str) -> None:
        """Fail a reserved job that will never be dispatched and free its lock."""
        async with self.session_factory() as db:
            job = await db.get(Job, as_uuid(job_id))
            if job is None:
                return
            job.status = job_transition(job.status, JobStatus.FAILED)
            job.error = reason
            job.finished_at = datetime.now(timezone.utc)
            token = LockToken(str(job.connection_id), job.lock_token) if job.lock_token else None
            await db.commit()
        if token:
            await self.lock_manager.release(token)

    async def active_job_id(self, connection_id) -> Optional[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Job.id)
                .where(
                    Job.connection_id == as_uuid(connection_id),
                    Job.status.in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value]),
                )
                .order_by(Job.created_at.desc())
                .limit(1)
            )
            job_id = result.scalar_one_or_none()
        return str(job_id) if job_id else None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def next_job_id(self) -> str:
        return await self._pending.get()

    def task_done(self) -> None:
        self._pending.task_done()

    async def run_job(self, job_id) -> Optional[str]:
        """
        Execute one reserved job to a terminal state and release its lock.
        Returns the terminal status, or None if the job was not runnable.
        """
        async with self.session_factory() as db:
            job = await db.get(Job, as_uuid(job_id))
            if job is None:
                logger.warning("Job %s not found, skipping", str(job_id)[:8])
                return None
            if job.status != JobStatus.QUEUED.value:
                logger.warning("Job %s is %s, not queued; skipping", str(job_id)[:8], job.status)
                return None
            job.status = job_transition(job.status, JobStatus.RUNNING)
            job.started_at = datetime.now(timezone.utc)
            await db.commit()

        token = LockToken(str(job.connection_id), job.lock_token) if job.lock_token else None
        keepalive = asyncio.create_task(self._keep_lock_alive(token)) if token else None

        status = JobStatus.FAILED
        summary: Optional[dict] = None
        error: Optional[str] = None
        try:
            handler = self.handlers.get(job.job_type)
            if handler is None:
                raise UnknownJobTypeError(f"No handler for job type: {job.job_type}")
            result = await handler(job, self.context)
            status, summary, error = result.status, result.summary, result.error
        except Exception as e:
            logger.error(
                "Job %s (%s) crashed: %s", str(job.id)[:8], job.job_type, str(e),
                exc_info=True, extra={"job_id": str(job.id), "connection_id": str(job.connection_id)},
            )
            error = str(e) or type(e).__name__
        finally:
            if keepalive:
                keepalive.cancel()
            try:
                await self._finish(job.id, status, summary, error)
            finally:
                if token:
                    await self.lock_manager.release(token)

        logger.info(
            "Job completed: id=%s type=%s status=%s",
            str(job.id)[:8], job.job_type, status.value,
            extra={"job_id": str(job.id), "connection_id": str(job.connection_id)},
        )
        return status.value

    async def _finish(self, job_id, status: JobStatus, summary: Optional[dict], error: Optional[str]) -> None:
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if job.status != JobStatus.RUNNING.value:
                logger.warning(
                    "Job %s already %s, dropping %s result", str(job_id)[:8], job.status, status.value,
                )
                return
            job.status = job_transition(job.status, status)
            job.result_summary = summary
            job.error = error
            job.finished_at = datetime.now(timezone.utc)
            await db.commit()

    async def _keep_lock_alive(self, token: LockToken) -> None:
        interval = max(1, self.settings.lock_refresh_seconds)
        while True:
            await asyncio.sleep(interval)
            if not await self.lock_manager.refresh(token):
                logger.error("Lost lock for connection %s while job running", token.connection_id[:8])


_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    """Process-wide job queue used by the API and workers."""
    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue()
    return _job_queue
