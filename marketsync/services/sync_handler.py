"""
Sync handler - pulls one resource type for one connection, page by page,
and converges the local store onto it.

fetching -> upserting -> (next page | done); a retryable page failure
waits inside call_with_retry while the connection lock stays held.
Pages already upserted are committed, so a failure on page k keeps pages
before it. The cursor's last_success_at only moves on full success.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.errors import MalformedRecordError
from marketsync.integrations.marketplace_base import Page, parse_page
from marketsync.models.enums import CursorStatus, JobStatus
from marketsync.models.job import Job
from marketsync.models.sync_cursor import SyncCursor
from marketsync.services.connections import load_connection
from marketsync.services.entity_store import INSERTED, UNCHANGED, UPDATED
from marketsync.services.job_context import HandlerResult, JobContext
from marketsync.services.retry_policy import RetryDecision, SYNC_PAGE_PROFILE, call_with_retry
from marketsync.services.sync_resources import SyncResource, resource_for_job_type
from marketsync.services.sync_window import window_from_settings

logger = logging.getLogger(__name__)


async def get_or_create_cursor(db: AsyncSession, connection_id, resource_type: str) -> SyncCursor:
    result = await db.execute(
        select(SyncCursor).where(
            SyncCursor.connection_id == connection_id,
            SyncCursor.resource_type == resource_type,
        )
    )
    cursor = result.scalar_one_or_none()
    if cursor is None:
        cursor = SyncCursor(connection_id=connection_id, resource_type=resource_type)
        db.add(cursor)
        await db.flush()
    return cursor


def has_more_pages(page: Page, pages_fetched: int, size: int) -> bool:
    """Whether the remote reports (or implies) another page after this one."""
    if not page.items:
        return False
    if page.total_pages is not None:
        return pages_fetched < page.total_pages
    if page.total_elements is not None:
        return pages_fetched * size < page.total_elements
    return len(page.items) >= size


def _error_text(status_code: Optional[int], body) -> str:
    body_text = str(body)
    if len(body_text) > 500:
        body_text = body_text[:500] + "..."
    return f"HTTP {status_code if status_code is not None else 'no-response'}: {body_text}"


async def run_sync(job: Job, ctx: JobContext) -> HandlerResult:
    """Job handler for SYNC_* job types."""
    resource = resource_for_job_type(job.job_type)
    payload = job.request_payload or {}
    started = time.monotonic()
    run_started_at = datetime.now(timezone.utc)

    async with ctx.session_factory() as db:
        connection = await load_connection(db, job.connection_id)
        connection_id = connection.id
        cursor = await get_or_create_cursor(db, connection.id, resource.name)
        last_success_at = cursor.last_success_at
        cursor.last_attempt_at = run_started_at
        cursor.last_status = CursorStatus.RUNNING.value
        cursor.last_job_id = job.id
        await db.commit()

        window_start = window_end = None
        if resource.windowed:
            window_start, window_end = window_from_settings(last_success_at, run_started_at, ctx.settings)

        client = ctx.client_factory(connection)
        size = min(
            int(payload.get("page_size") or ctx.settings.sync_page_size),
            resource.max_page_size,
            getattr(client, "max_page_size", resource.max_page_size),
        )

        summary = {
            "resource": resource.name,
            "pages": 0,
            "fetched": 0,
            "inserted": 0,
            "updated": 0,
            "unchanged": 0,
            "skipped": 0,
            "total_elements": None,
            "window_start": window_start.isoformat() if window_start else None,
            "window_end": window_end.isoformat() if window_end else None,
            "ceiling_hit": None,
        }

        try:
            status, error = await _paginate(
                db, ctx, client, resource, connection, size, window_start, window_end, summary,
            )
        except Exception as e:
            await db.rollback()
            await _finish_cursor(db, connection_id, resource.name, job.id, CursorStatus.FAILED, str(e), summary, None)
            raise

        summary["duration_ms"] = int((time.monotonic() - started) * 1000)
        cursor_status = {
            JobStatus.SUCCESS: CursorStatus.SUCCESS,
            JobStatus.PARTIAL: CursorStatus.PARTIAL,
            JobStatus.FAILED: CursorStatus.FAILED,
        }[status]
        await _finish_cursor(
            db, connection.id, resource.name, job.id, cursor_status, error, summary,
            run_started_at if status == JobStatus.SUCCESS else None,
        )

    logger.info(
        "Sync %s finished: connection=%s status=%s pages=%d fetched=%d inserted=%d updated=%d skipped=%d",
        resource.name, str(job.connection_id)[:8], status.value, summary["pages"],
        summary["fetched"], summary["inserted"], summary["updated"], summary["skipped"],
        extra={"connection_id": str(job.connection_id), "job_id": str(job.id), "resource": resource.name},
    )
    return HandlerResult(status=status, summary=summary, error=error)


async def _paginate(
    db: AsyncSession,
    ctx: JobContext,
    client,
    resource: SyncResource,
    connection,
    size: int,
    window_start,
    window_end,
    summary: dict,
) -> tuple[JobStatus, Optional[str]]:
    """Fetch and upsert pages until exhausted, failed, or a ceiling is hit."""
    max_pages = ctx.settings.sync_max_pages
    max_records = ctx.settings.sync_max_records
    page_number = 0

    while True:
        outcome = await call_with_retry(
            lambda: resource.fetch(client, page_number, size, window_start, window_end),
            SYNC_PAGE_PROFILE,
            sleep=ctx.sleep,
            label=f"{resource.name} page={page_number} connection={str(connection.id)[:8]}",
        )
        if outcome.decision != RetryDecision.OK:
            error = _error_text(outcome.response.status_code, outcome.response.body)
            summary["failed_page"] = page_number
            summary["failure_classification"] = (
                "retryable" if outcome.decision == RetryDecision.RETRY else "permanent"
            )
            return JobStatus.FAILED, error

        page = parse_page(outcome.response.body, page_number, size)
        summary["pages"] += 1
        summary["fetched"] += len(page.items)
        if page.total_elements is not None:
            summary["total_elements"] = page.total_elements

        for item in page.items:
            try:
                record = resource.normalize(item)
            except MalformedRecordError as e:
                summary["skipped"] += 1
                logger.warning("Skipping malformed %s record: %s", resource.name, str(e))
                continue
            except Exception as e:
                # Normalizers only read the record; any failure there is a bad record
                summary["skipped"] += 1
                logger.warning(
                    "Skipping unreadable %s record: %s: %s", resource.name, type(e).__name__, str(e),
                    exc_info=True,
                )
                continue
            for result in await resource.write(db, connection.id, connection.marketplace, record):
                if result.action == INSERTED:
                    summary["inserted"] += 1
                elif result.action == UPDATED:
                    summary["updated"] += 1
                elif result.action == UNCHANGED:
                    summary["unchanged"] += 1
        await db.commit()

        if not has_more_pages(page, summary["pages"], size):
            return JobStatus.SUCCESS, None
        if summary["pages"] >= max_pages:
            summary["ceiling_hit"] = "pages"
            logger.warning("Sync %s hit page ceiling (%d)", resource.name, max_pages)
            return JobStatus.PARTIAL, None
        if summary["fetched"] >= max_records:
            summary["ceiling_hit"] = "records"
            logger.warning("Sync %s hit record ceiling (%d)", resource.name, max_records)
            return JobStatus.PARTIAL, None
        page_number += 1


async def _finish_cursor(
    db: AsyncSession,
    connection_id,
    resource_type: str,
    job_id,
    status: CursorStatus,
    error: Optional[str],
    summary: dict,
    success_at: Optional[datetime],
) -> None:
    """Record the attempt outcome. last_success_at is left alone unless success_at is given."""
    cursor = await get_or_create_cursor(db, connection_id, resource_type)
    cursor.last_status = status.value
    cursor.last_job_id = job_id
    cursor.last_error = error
    cursor.last_summary = summary
    if success_at is not None:
        cursor.last_success_at = success_at
    await db.commit()
