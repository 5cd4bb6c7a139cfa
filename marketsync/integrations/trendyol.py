"""
Trendyol marketplace integration - REST API.

Auth: Basic base64(apiKey:apiSecret) plus a "<sellerId> - <integration>"
User-Agent, both required by the gateway.
All calls have a bounded timeout and are never retried here.
"""
import base64
import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from marketsync.integrations.marketplace_base import MarketplaceClient, RemoteResponse

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://apigw.trendyol.com"
TIMEOUT = 10.0
QUESTION_PAGE_MAX = 50


def _epoch_ms(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp() * 1000) if value else None


class TrendyolClient(MarketplaceClient):
    """Trendyol seller API integration."""

    max_page_size = 200

    def __init__(
        self,
        seller_id: str,
        api_key: str,
        api_secret: str,
        base_url: str = DEFAULT_BASE_URL,
        integration_name: str = "marketsync",
        timeout: float = TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.seller_id = seller_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        token = base64.b64encode(f"{api_key}:{api_secret}".encode("ascii")).decode("ascii")
        self._headers = {
            "Authorization": f"Basic {token}",
            "User-Agent": f"{seller_id} - {integration_name}",
            "x-agentname": integration_name,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Optional[Any] = None,
    ) -> RemoteResponse:
        """Issue one call. Transport failures come back as status_code=None."""
        url = f"{self.base_url}/{path.lstrip('/')}"
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method, url, headers=self._headers, params=clean_params, json=json,
                )
        except httpx.TransportError as e:
            logger.warning("Trendyol %s %s transport error: %s", method, path, str(e))
            return RemoteResponse(status_code=None, body={"error": type(e).__name__, "message": str(e)})

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = response.text

        if response.status_code >= 400:
            logger.info("Trendyol %s %s -> %d", method, path, response.status_code)
        return RemoteResponse(
            status_code=response.status_code,
            body=body,
            headers=dict(response.headers),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_orders(self, page, size, start=None, end=None) -> RemoteResponse:
        return await self._request(
            "GET",
            f"integration/order/sellers/{self.seller_id}/orders",
            params={
                "page": page,
                "size": size,
                "startDate": _epoch_ms(start),
                "endDate": _epoch_ms(end),
                "orderByField": "PackageLastModifiedDate",
                "orderByDirection": "ASC",
            },
        )

    async def fetch_products(self, page, size) -> RemoteResponse:
        return await self._request(
            "GET",
            f"integration/product/sellers/{self.seller_id}/products",
            params={"page": page, "size": size},
        )

    async def fetch_claims(self, page, size, start=None, end=None) -> RemoteResponse:
        return await self._request(
            "GET",
            f"integration/order/sellers/{self.seller_id}/claims",
            params={"page": page, "size": size, "startDate": _epoch_ms(start), "endDate": _epoch_ms(end)},
        )

    async def fetch_questions(self, page, size, start=None, end=None) -> RemoteResponse:
        return await self._request(
            "GET",
            f"integration/qna/sellers/{self.seller_id}/questions/filter",
            params={
                "supplierId": self.seller_id,
                "page": page,
                "size": min(size, QUESTION_PAGE_MAX),
                "startDate": _epoch_ms(start),
                "endDate": _epoch_ms(end),
            },
        )

    async def fetch_settlements(self, page, size, start=None, end=None) -> RemoteResponse:
        return await self._request(
            "GET",
            f"integration/finance/che/sellers/{self.seller_id}/settlements",
            params={
                "page": page,
                "size": size,
                "startDate": _epoch_ms(start),
                "endDate": _epoch_ms(end),
                "transactionType": "Sale",
            },
        )

    async def get_batch_request(self, batch_request_id) -> RemoteResponse:
        return await self._request(
            "GET",
            f"integration/product/sellers/{self.seller_id}/products/batch-requests/{batch_request_id}",
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def answer_question(self, question_id, text) -> RemoteResponse:
        return await self._request(
            "POST",
            f"integration/qna/sellers/{self.seller_id}/questions/{question_id}/answers",
            json={"text": text},
        )

    async def approve_claim_items(self, claim_id, claim_item_ids) -> RemoteResponse:
        return await self._request(
            "PUT",
            f"integration/order/sellers/{self.seller_id}/claims/{claim_id}/items/approve",
            json={"claimLineItemIdList": list(claim_item_ids), "params": {}},
        )

    async def create_claim_issue(self, claim_id, claim_item_ids, reason_id, description=None) -> RemoteResponse:
        return await self._request(
            "POST",
            f"integration/order/sellers/{self.seller_id}/claims/{claim_id}/issue",
            params={
                "claimIssueReasonId": reason_id,
                "claimItemIdList": ",".join(claim_item_ids),
                "description": description,
            },
        )

    async def update_tracking_number(self, shipment_package_id, tracking_number) -> RemoteResponse:
        return await self._request(
            "PUT",
            f"integration/order/sellers/{self.seller_id}/shipment-packages/{shipment_package_id}/update-tracking-number",
            json={"trackingNumber": tracking_number},
        )

    async def update_price_and_inventory(self, items) -> RemoteResponse:
        return await self._request(
            "POST",
            f"integration/inventory/sellers/{self.seller_id}/products/price-and-inventory",
            json={"items": items},
        )
