"""
Request and response schemas for the job engine API.
Field names follow the camelCase used in the polling contract.
"""
from typing import Any, Optional
from pydantic import BaseModel, Field


class SyncSubmitResponse(BaseModel):
    jobId: Optional[str] = None
    rejected: Optional[str] = None  # "locked"
    activeJobId: Optional[str] = None


class CommandRequest(BaseModel):
    """One write action against a connection."""
    commandType: str
    idempotencyKey: str = Field(..., min_length=1, max_length=200)
    targetId: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    executorUser: Optional[str] = None


class CommandReceiptResponse(BaseModel):
    commandId: str
    status: str
    jobId: Optional[str] = None
    replayed: bool = False
    response: Optional[Any] = None
    error: Optional[dict] = None


class PriceStockItem(BaseModel):
    barcode: str
    quantity: Optional[int] = Field(default=None, ge=0)
    salePrice: Optional[float] = Field(default=None, ge=0)
    listPrice: Optional[float] = Field(default=None, ge=0)


class PriceStockPushRequest(BaseModel):
    items: list[PriceStockItem] = Field(..., min_length=1)
    executorUser: Optional[str] = None
    requestId: Optional[str] = Field(default=None, max_length=100)  # distinguishes deliberate repeats


class DeferredChunk(BaseModel):
    idempotencyKey: str
    items: int


class PriceStockPushResponse(BaseModel):
    commands: list[CommandReceiptResponse]
    deferred: list[DeferredChunk] = Field(default_factory=list)
    unchanged: int


class BatchConfirmResponse(BaseModel):
    status: Optional[str] = None
    confirmed: int = 0
    failed: int = 0
    status_code: Optional[int] = None


class WebhookReceiptResponse(BaseModel):
    ok: bool
    eventId: Optional[str] = None
    dedupHit: bool = False
    downstream: Optional[str] = None
    jobId: Optional[str] = None
    error: Optional[str] = None
