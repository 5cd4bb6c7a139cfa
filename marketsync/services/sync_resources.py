"""
Per-resource normalization and entity writers used by the sync handler.

Each normalizer turns one remote record into a NormalizedRecord or raises
MalformedRecordError; the sync handler skips and counts those.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.errors import MalformedRecordError
from marketsync.models.claim import Claim, ClaimItem
from marketsync.models.enums import JobType
from marketsync.models.order import Order
from marketsync.models.product import Product
from marketsync.models.question import Answer, Question
from marketsync.models.settlement import Settlement
from marketsync.services.entity_store import UpsertResult, upsert_entity


@dataclass
class NormalizedRecord:
    remote_id: str
    fields: dict
    raw: dict
    children: list = field(default_factory=list)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _first_id(record: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if value is not None and value != "":
            return str(value)
    return None


def _require_dict(record: Any) -> dict:
    if not isinstance(record, dict):
        raise MalformedRecordError(f"Expected object, got {type(record).__name__}")
    return record


def _dict(value: Any, name: str) -> dict:
    """Optional nested object; missing is empty, anything else but a dict is malformed."""
    if value is None or value == "":
        return {}
    if not isinstance(value, dict):
        raise MalformedRecordError(f"{name} is not an object: {type(value).__name__}")
    return value


def _list(value: Any, name: str) -> list:
    if value is None or value == "":
        return []
    if not isinstance(value, list):
        raise MalformedRecordError(f"{name} is not a list: {type(value).__name__}")
    return value


def _ms_to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise MalformedRecordError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise MalformedRecordError(f"Timestamp out of range: {value!r}")
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise MalformedRecordError(f"Invalid timestamp: {value!r}")
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise MalformedRecordError(f"Invalid timestamp: {value!r}")


def _number(value: Any, cast=float):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise MalformedRecordError(f"Invalid number: {value!r}")
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise MalformedRecordError(f"Invalid number: {value!r}")


def _str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------

def normalize_order(record: Any) -> NormalizedRecord:
    record = _require_dict(record)
    remote_id = _first_id(record, "orderNumber", "orderId", "id", "shipmentPackageId")
    if not remote_id:
        raise MalformedRecordError("Order without identifier")
    return NormalizedRecord(
        remote_id=remote_id,
        raw=record,
        fields={
            "order_number": _str(record.get("orderNumber")),
            "shipment_package_id": _first_id(record, "shipmentPackageId", "id"),
            "status": _str(record.get("shipmentPackageStatus") or record.get("status")),
            "cargo_tracking_number": _str(record.get("cargoTrackingNumber")),
            "order_date": _ms_to_datetime(record.get("orderDate")),
            "last_modified_at": _ms_to_datetime(record.get("lastModifiedDate")),
        },
    )


def normalize_product(record: Any) -> NormalizedRecord:
    record = _require_dict(record)
    remote_id = _first_id(record, "barcode", "productMainId", "id")
    if not remote_id:
        raise MalformedRecordError("Product without barcode")
    return NormalizedRecord(
        remote_id=remote_id,
        raw=record,
        fields={
            "barcode": _str(record.get("barcode")),
            "title": _str(record.get("title")),
            "stock_code": _str(record.get("stockCode")),
            "quantity": _number(record.get("quantity"), int),
            "sale_price": _number(record.get("salePrice")),
            "list_price": _number(record.get("listPrice")),
            "approved": record.get("approved") if isinstance(record.get("approved"), bool) else None,
        },
    )


def normalize_claim(record: Any) -> NormalizedRecord:
    record = _require_dict(record)
    remote_id = _first_id(record, "id", "claimId")
    if not remote_id:
        raise MalformedRecordError("Claim without identifier")

    children = []
    for line in _list(record.get("items"), "items"):
        line = _dict(line, "claim line")
        order_line = _dict(line.get("orderLine"), "orderLine")
        for item in _list(line.get("claimItems"), "claimItems"):
            item = _require_dict(item)
            item_id = _first_id(item, "id", "claimItemId")
            if not item_id:
                raise MalformedRecordError("Claim item without identifier")
            status = item.get("claimItemStatus")
            reason = _dict(item.get("customerClaimItemReason"), "customerClaimItemReason")
            children.append(NormalizedRecord(
                remote_id=item_id,
                raw=item,
                fields={
                    "claim_remote_id": remote_id,
                    "barcode": _str(order_line.get("barcode")),
                    "quantity": 1,
                    "item_status": _str(status.get("name") if isinstance(status, dict) else status),
                    "reason_code": _str(reason.get("code")),
                    "reason_name": _str(reason.get("name")),
                },
            ))

    status = record.get("claimStatus") or record.get("status")
    return NormalizedRecord(
        remote_id=remote_id,
        raw=record,
        fields={
            "order_number": _str(record.get("orderNumber")),
            "status": _str(status.get("name") if isinstance(status, dict) else status),
            "claim_date": _ms_to_datetime(record.get("claimDate")),
            "last_modified_at": _ms_to_datetime(record.get("lastModifiedDate")),
        },
        children=children,
    )


def normalize_question(record: Any) -> NormalizedRecord:
    record = _require_dict(record)
    remote_id = _first_id(record, "id", "questionId")
    if not remote_id:
        raise MalformedRecordError("Question without identifier")

    children = []
    answer = record.get("answer")
    if isinstance(answer, dict) and answer.get("text"):
        children.append(NormalizedRecord(
            remote_id=_first_id(answer, "id") or f"{remote_id}:answer",
            raw=answer,
            fields={
                "text": _str(answer.get("text")),
                "answered_at": _ms_to_datetime(answer.get("creationDate")),
            },
        ))

    return NormalizedRecord(
        remote_id=remote_id,
        raw=record,
        fields={
            "status": _str(record.get("status")),
            "text": _str(record.get("text")),
            "asked_at": _ms_to_datetime(record.get("creationDate")),
            "product_name": _str(record.get("productName")),
            "product_main_id": _str(record.get("productMainId")),
            "customer_id": _str(record.get("customerId")),
        },
        children=children,
    )


def normalize_settlement(record: Any) -> NormalizedRecord:
    record = _require_dict(record)
    remote_id = _first_id(record, "id", "transactionId")
    if not remote_id:
        raise MalformedRecordError("Settlement without identifier")
    amount = record.get("credit") or record.get("debt") or record.get("amount")
    return NormalizedRecord(
        remote_id=remote_id,
        raw=record,
        fields={
            "transaction_type": _str(record.get("transactionType")),
            "amount": _number(amount),
            "transaction_date": _ms_to_datetime(record.get("transactionDate")),
            "order_number": _str(record.get("orderNumber")),
        },
    )


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------

async def write_order(db, connection_id, marketplace, record) -> list[UpsertResult]:
    return [await upsert_entity(
        db, Order, connection_id=connection_id, marketplace=marketplace,
        remote_id=record.remote_id, fields=record.fields, raw=record.raw,
        entity_type="order", status_field="status",
    )]


async def write_product(db, connection_id, marketplace, record) -> list[UpsertResult]:
    return [await upsert_entity(
        db, Product, connection_id=connection_id, marketplace=marketplace,
        remote_id=record.remote_id, fields=record.fields, raw=record.raw,
        entity_type="product",
    )]


async def write_claim(db, connection_id, marketplace, record) -> list[UpsertResult]:
    claim = await upsert_entity(
        db, Claim, connection_id=connection_id, marketplace=marketplace,
        remote_id=record.remote_id, fields=record.fields, raw=record.raw,
        entity_type="claim", status_field="status",
    )
    results = [claim]
    for child in record.children:
        results.append(await upsert_entity(
            db, ClaimItem, connection_id=connection_id, marketplace=marketplace,
            remote_id=child.remote_id,
            fields={**child.fields, "claim_db_id": claim.entity.id},
            raw=child.raw, entity_type="claim_item", status_field="item_status",
        ))
    return results


async def write_question(db, connection_id, marketplace, record) -> list[UpsertResult]:
    question = await upsert_entity(
        db, Question, connection_id=connection_id, marketplace=marketplace,
        remote_id=record.remote_id, fields=record.fields, raw=record.raw,
        entity_type="question", status_field="status",
    )
    results = [question]
    for child in record.children:
        results.append(await upsert_entity(
            db, Answer, connection_id=connection_id, marketplace=marketplace,
            remote_id=child.remote_id,
            fields={**child.fields, "question_db_id": question.entity.id},
            raw=child.raw, entity_type="answer",
        ))
    return results


async def write_settlement(db, connection_id, marketplace, record) -> list[UpsertResult]:
    return [await upsert_entity(
        db, Settlement, connection_id=connection_id, marketplace=marketplace,
        remote_id=record.remote_id, fields=record.fields, raw=record.raw,
        entity_type="settlement",
    )]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

Writer = Callable[[AsyncSession, Any, str, NormalizedRecord], Awaitable[list]]


@dataclass(frozen=True)
class SyncResource:
    name: str
    job_type: JobType
    fetch: Callable  # (client, page, size, start, end) -> RemoteResponse
    normalize: Callable[[Any], NormalizedRecord]
    write: Writer
    model: Any
    windowed: bool = True
    max_page_size: int = 200


SYNC_RESOURCES: dict[str, SyncResource] = {
    "orders": SyncResource(
        name="orders", job_type=JobType.SYNC_ORDERS,
        fetch=lambda c, p, s, start, end: c.fetch_orders(p, s, start, end),
        normalize=normalize_order, write=write_order, model=Order,
    ),
    "products": SyncResource(
        name="products", job_type=JobType.SYNC_PRODUCTS,
        fetch=lambda c, p, s, start, end: c.fetch_products(p, s),
        normalize=normalize_product, write=write_product, model=Product,
        windowed=False,
    ),
    "claims": SyncResource(
        name="claims", job_type=JobType.SYNC_CLAIMS,
        fetch=lambda c, p, s, start, end: c.fetch_claims(p, s, start, end),
        normalize=normalize_claim, write=write_claim, model=Claim,
        max_page_size=50,
    ),
    "questions": SyncResource(
        name="questions", job_type=JobType.SYNC_QUESTIONS,
        fetch=lambda c, p, s, start, end: c.fetch_questions(p, s, start, end),
        normalize=normalize_question, write=write_question, model=Question,
        max_page_size=50,
    ),
    "settlements": SyncResource(
        name="settlements", job_type=JobType.SYNC_SETTLEMENTS,
        fetch=lambda c, p, s, start, end: c.fetch_settlements(p, s, start, end),
        normalize=normalize_settlement, write=write_settlement, model=Settlement,
        max_page_size=500,
    ),
}


def resource_for_job_type(job_type: str) -> SyncResource:
    for resource in SYNC_RESOURCES.values():
        if resource.job_type.value == job_type:
            return resource
    raise KeyError(job_type)
