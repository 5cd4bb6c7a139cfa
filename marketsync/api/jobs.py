"""
Sync submission and polling endpoints.

- POST /api/v1/connections/{id}/sync/{resource} - 202 {"jobId"} or 409 {"rejected": "locked"}
- GET  /api/v1/connections/{id}/status          - cursors per resource + last job
- GET  /api/v1/jobs/{id}                        - one job
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.api.deps import job_queue_dep
from marketsync.database import get_db
from marketsync.errors import ConnectionNotFoundError, LockBackendError
from marketsync.schemas.api_responses import SyncSubmitResponse
from marketsync.services.job_queue import JobQueue
from marketsync.services.status import get_job, get_status
from marketsync.services.sync_resources import SYNC_RESOURCES

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["jobs"])


@router.post(
    "/connections/{connection_id}/sync/{resource}",
    response_model=SyncSubmitResponse,
    status_code=202,
)
async def submit_sync(
    connection_id: str,
    resource: str,
    queue: JobQueue = Depends(job_queue_dep),
):
    """Start a sync for one resource. Never waits for a busy connection."""
    sync_resource = SYNC_RESOURCES.get(resource.lower())
    if sync_resource is None:
        raise HTTPException(status_code=400, detail=f"Unknown resource: {resource}")

    try:
        result = await queue.submit(connection_id, sync_resource.job_type.value, {"trigger": "api"})
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    except LockBackendError as e:
        logger.error("Lock backend unavailable for sync submit: %s", str(e))
        raise HTTPException(status_code=503, detail="Lock backend unavailable")

    if not result.accepted:
        return JSONResponse(status_code=409, content=result.as_dict())
    return result.as_dict()


@router.get("/connections/{connection_id}/status")
async def connection_status(
    connection_id: str,
    db: AsyncSession = Depends(get_db),
):
    try:
        return await get_status(db, connection_id)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")


@router.get("/jobs/{job_id}")
async def job_detail(
    job_id: str,
    db: AsyncSession = Depends(get_db),
):
    job = await get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job
