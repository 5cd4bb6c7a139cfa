"""
Command endpoints - idempotent marketplace writes.

- POST /api/v1/connections/{id}/commands           - 202 new, 200 replayed
- GET  /api/v1/commands/{id}                        - one command
- POST /api/v1/connections/{id}/inventory/push      - price/stock push, chunked
- POST /api/v1/connections/{id}/inventory/batches/{batch_id}/confirm
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.api.deps import command_service_dep, job_queue_dep
from marketsync.database import get_db
from marketsync.errors import (
    CommandInFlightError,
    ConnectionBusyError,
    ConnectionNotFoundError,
    LockBackendError,
    UnknownJobTypeError,
)
from marketsync.schemas.api_responses import (
    BatchConfirmResponse,
    CommandReceiptResponse,
    CommandRequest,
    PriceStockPushRequest,
    PriceStockPushResponse,
)
from marketsync.services.command_handler import CommandValidationError
from marketsync.services.commands import CommandService
from marketsync.services.inventory import confirm_batch, submit_price_stock
from marketsync.services.job_queue import JobQueue
from marketsync.services.status import get_command

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["commands"])


def _admission_error(e: Exception) -> HTTPException:
    """Map a rejected admission to an HTTP error."""
    if isinstance(e, ConnectionNotFoundError):
        return HTTPException(status_code=404, detail="Connection not found")
    if isinstance(e, ConnectionBusyError):
        return HTTPException(
            status_code=409,
            detail={"rejected": "locked", "activeJobId": e.active_job_id},
        )
    if isinstance(e, CommandInFlightError):
        return HTTPException(
            status_code=409,
            detail={"rejected": "in_flight", "commandId": e.command_id, "status": e.status},
        )
    if isinstance(e, (CommandValidationError, UnknownJobTypeError)):
        return HTTPException(status_code=422, detail=str(e))
    logger.error("Lock backend unavailable for command submit: %s", str(e))
    return HTTPException(status_code=503, detail="Lock backend unavailable")


ADMISSION_ERRORS = (
    ConnectionNotFoundError,
    ConnectionBusyError,
    CommandInFlightError,
    CommandValidationError,
    UnknownJobTypeError,
    LockBackendError,
)


@router.post(
    "/connections/{connection_id}/commands",
    response_model=CommandReceiptResponse,
    status_code=202,
)
async def submit_command(
    connection_id: str,
    request: CommandRequest,
    service: CommandService = Depends(command_service_dep),
):
    try:
        receipt = await service.submit(
            connection_id,
            request.commandType,
            request.targetId,
            request.idempotencyKey,
            request.payload,
            executor_user=request.executorUser,
        )
    except ADMISSION_ERRORS as e:
        raise _admission_error(e)

    if receipt.replayed:
        return JSONResponse(status_code=200, content=receipt.as_dict())
    return receipt.as_dict()


@router.get("/commands/{command_id}")
async def command_detail(
    command_id: str,
    db: AsyncSession = Depends(get_db),
):
    command = await get_command(db, command_id)
    if command is None:
        raise HTTPException(status_code=404, detail="Command not found")
    return command


@router.post(
    "/connections/{connection_id}/inventory/push",
    response_model=PriceStockPushResponse,
    status_code=202,
)
async def push_price_stock(
    connection_id: str,
    request: PriceStockPushRequest,
    service: CommandService = Depends(command_service_dep),
):
    items = [item.model_dump(exclude_none=True) for item in request.items]
    try:
        return await submit_price_stock(
            service, connection_id, items,
            executor_user=request.executorUser, request_id=request.requestId,
        )
    except ADMISSION_ERRORS as e:
        raise _admission_error(e)


@router.post(
    "/connections/{connection_id}/inventory/batches/{batch_request_id}/confirm",
    response_model=BatchConfirmResponse,
)
async def confirm_price_stock_batch(
    connection_id: str,
    batch_request_id: str,
    queue: JobQueue = Depends(job_queue_dep),
):
    try:
        return await confirm_batch(
            queue.session_factory, queue.context.client_factory, connection_id, batch_request_id,
        )
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
