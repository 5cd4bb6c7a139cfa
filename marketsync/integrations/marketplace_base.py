"""
Abstract marketplace interface - all marketplace integrations implement this.
CRITICAL: clients never retry. Every call returns a RemoteResponse (status +
body) and the calling handler decides what to do through the retry policy.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass
class RemoteResponse:
    """
    Outcome of one HTTP call. status_code is None when no response arrived
    (timeout, connection reset, DNS failure).
    """
    status_code: Optional[int]
    body: Any = None
    headers: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    @property
    def retry_after_seconds(self) -> Optional[float]:
        value = {k.lower(): v for k, v in self.headers.items()}.get("retry-after")
        if value is None:
            return None
        try:
            return max(0.0, float(value))
        except (TypeError, ValueError):
            return None


@dataclass
class Page:
    """One page of a list endpoint, with whatever totals the remote reported."""
    items: list
    page: int
    size: int
    total_elements: Optional[int] = None
    total_pages: Optional[int] = None


def parse_page(body: Any, page: int, size: int) -> Page:
    """
    Read a list response. Accepts {content: [...], totalElements, totalPages}
    and the common variants (items/data lists, pageCount, bare arrays).
    """
    if isinstance(body, list):
        return Page(items=body, page=page, size=size)
    if not isinstance(body, dict):
        return Page(items=[], page=page, size=size)

    items = None
    for key in ("content", "items", "data", "questions", "claims", "orders"):
        if isinstance(body.get(key), list):
            items = body[key]
            break

    def _int(*keys) -> Optional[int]:
        for key in keys:
            value = body.get(key)
            if isinstance(value, bool):
                continue
            if isinstance(value, (int, float)):
                return int(value)
        return None

    return Page(
        items=items or [],
        page=page,
        size=size,
        total_elements=_int("totalElements", "totalCount"),
        total_pages=_int("totalPages", "pageCount"),
    )


class MarketplaceClient(ABC):
    """Abstract base class for marketplace integrations."""

    max_page_size: int = 200

    @abstractmethod
    async def fetch_orders(
        self, page: int, size: int,
        start: Optional[datetime] = None, end: Optional[datetime] = None,
    ) -> RemoteResponse:
        ...

    @abstractmethod
    async def fetch_products(self, page: int, size: int) -> RemoteResponse:
        ...

    @abstractmethod
    async def fetch_claims(
        self, page: int, size: int,
        start: Optional[datetime] = None, end: Optional[datetime] = None,
    ) -> RemoteResponse:
        ...

    @abstractmethod
    async def fetch_questions(
        self, page: int, size: int,
        start: Optional[datetime] = None, end: Optional[datetime] = None,
    ) -> RemoteResponse:
        ...

    @abstractmethod
    async def fetch_settlements(
        self, page: int, size: int,
        start: Optional[datetime] = None, end: Optional[datetime] = None,
    ) -> RemoteResponse:
        ...

    @abstractmethod
    async def answer_question(self, question_id: str, text: str) -> RemoteResponse:
        ...

    @abstractmethod
    async def approve_claim_items(self, claim_id: str, claim_item_ids: list[str]) -> RemoteResponse:
        ...

    @abstractmethod
    async def create_claim_issue(
        self,
        claim_id: str,
        claim_item_ids: list[str],
        reason_id: str,
        description: Optional[str] = None,
    ) -> RemoteResponse:
        ...

    @abstractmethod
    async def update_tracking_number(self, shipment_package_id: str, tracking_number: str) -> RemoteResponse:
        ...

    @abstractmethod
    async def update_price_and_inventory(self, items: list[dict]) -> RemoteResponse:
        """
        Submit a price/stock batch.
        Body on success: {"batchRequestId": str}
        """
        ...

    @abstractmethod
    async def get_batch_request(self, batch_request_id: str) -> RemoteResponse:
        ...
