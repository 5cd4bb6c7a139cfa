"""
Webhook receiver - marketplace push notifications.

Verification failures get 401. Anything verified gets 200, with dedupHit
set when the same event was already stored, so the provider stops
redelivering.
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from marketsync.api.deps import webhook_processor_dep
from marketsync.schemas.api_responses import WebhookReceiptResponse
from marketsync.services.webhook_dedup import WebhookDedupProcessor

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/{provider}", response_model=WebhookReceiptResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    processor: WebhookDedupProcessor = Depends(webhook_processor_dep),
):
    body = await request.body()
    receipt = await processor.receive(provider, request.headers, body)
    return JSONResponse(status_code=receipt.status_code, content=receipt.as_dict())
