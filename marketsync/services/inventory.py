"""
Price/stock pushes: diff against confirmed state, chunk, submit as commands,
and fold batch results back into the confirmed state.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.errors import CommandInFlightError, ConnectionBusyError
from marketsync.models.enums import JobType
from marketsync.models.inventory_state import InventoryConfirmedState
from marketsync.services.command_handler import PUSH_MAX_ITEMS, CommandValidationError
from marketsync.services.commands import CommandService
from marketsync.services.connections import as_uuid, load_connection
from marketsync.services.retry_policy import COMMAND_PROFILE, call_with_retry
from marketsync.utils.dedup import derive_idempotency_key

logger = logging.getLogger(__name__)

PRICE_FIELDS = ("quantity", "salePrice", "listPrice")


def coalesce_items(items: list[dict]) -> list[dict]:
    """One entry per barcode; a later entry overrides fields of an earlier one."""
    merged: dict[str, dict] = {}
    for item in items:
        if not isinstance(item, dict) or not item.get("barcode"):
            raise CommandValidationError("every item needs a barcode")
        barcode = str(item["barcode"])
        merged.setdefault(barcode, {"barcode": barcode}).update(
            {k: item[k] for k in PRICE_FIELDS if item.get(k) is not None}
        )
    return list(merged.values())


def _matches_confirmed(item: dict, state: Optional[InventoryConfirmedState]) -> bool:
    if state is None:
        return False
    pairs = (
        ("quantity", state.quantity),
        ("salePrice", state.sale_price),
        ("listPrice", state.list_price),
    )
    for key, confirmed in pairs:
        if key in item and (confirmed is None or float(item[key]) != float(confirmed)):
            return False
    return True


async def load_confirmed(db: AsyncSession, connection_id, barcodes: list[str]) -> dict[str, InventoryConfirmedState]:
    result = await db.execute(
        select(InventoryConfirmedState).where(
            InventoryConfirmedState.connection_id == as_uuid(connection_id),
            InventoryConfirmedState.barcode.in_(barcodes),
        )
    )
    return {row.barcode: row for row in result.scalars().all()}


def confirmed_baseline(chunk: list[dict], confirmed: dict[str, InventoryConfirmedState]) -> list:
    """Confirmed values each item in the chunk replaces, in chunk order."""
    baseline = []
    for item in chunk:
        state = confirmed.get(item["barcode"])
        if state is None:
            baseline.append(None)
        else:
            baseline.append([state.quantity, state.sale_price, state.list_price])
    return baseline


def push_idempotency_key(connection_id, chunk: list[dict], baseline: list, request_id: Optional[str] = None) -> str:
    """
    Same chunk over the same confirmed state gives the same key, so a
    resubmission is replayed. Once a push is confirmed the baseline moves,
    so returning to an earlier value is a new key and is sent again.
    """
    return derive_idempotency_key("push", str(connection_id), chunk, baseline, request_id)


async def prepare_price_stock_push(db: AsyncSession, connection_id, items: list[dict]) -> tuple[list[list[dict]], int]:
    """
    Returns (chunks to push, number of unchanged items dropped).
    Items equal to the last confirmed state are not resent.
    """
    merged = coalesce_items(items)
    confirmed = await load_confirmed(db, connection_id, [i["barcode"] for i in merged])

    merged.sort(key=lambda i: i["barcode"])
    changed = [item for item in merged if not _matches_confirmed(item, confirmed.get(item["barcode"]))]
    chunks = [changed[i:i + PUSH_MAX_ITEMS] for i in range(0, len(changed), PUSH_MAX_ITEMS)]
    return chunks, len(merged) - len(changed)


async def submit_price_stock(
    service: CommandService,
    connection_id,
    items: list[dict],
    executor_user: Optional[str] = None,
    request_id: Optional[str] = None,
) -> dict:
    """Submit changed items as one PUSH_PRICE_STOCK command per chunk."""
    async with service.session_factory() as db:
        chunks, unchanged = await prepare_price_stock_push(db, connection_id, items)
        confirmed = await load_confirmed(db, connection_id, [i["barcode"] for chunk in chunks for i in chunk])

    receipts = []
    deferred = []
    first_error: Optional[Exception] = None
    for chunk in chunks:
        key = push_idempotency_key(connection_id, chunk, confirmed_baseline(chunk, confirmed), request_id)
        try:
            receipt = await service.submit(
                connection_id,
                JobType.PUSH_PRICE_STOCK.value,
                None,
                key,
                {"items": chunk},
                executor_user=executor_user,
            )
        except (ConnectionBusyError, CommandInFlightError) as e:
            # One job per connection: later chunks wait for a resubmission
            first_error = first_error or e
            deferred.append({"idempotencyKey": key, "items": len(chunk)})
            continue
        receipts.append(receipt.as_dict())

    if deferred and not receipts:
        raise first_error

    logger.info(
        "Price/stock push: connection=%s chunks=%d deferred=%d unchanged=%d",
        str(connection_id)[:8], len(chunks), len(deferred), unchanged,
    )
    return {"commands": receipts, "deferred": deferred, "unchanged": unchanged}


async def confirm_batch(session_factory, client_factory, connection_id, batch_request_id: str, sleep=None) -> dict:
    """
    Poll a batch result and record confirmed state for items reported SUCCESS.
    Returns {"status": <batch status>, "confirmed": n, "failed": n}.
    """
    async with session_factory() as db:
        connection = await load_connection(db, connection_id)
        client = client_factory(connection)
        kwargs = {"sleep": sleep} if sleep else {}
        outcome = await call_with_retry(
            lambda: client.get_batch_request(batch_request_id),
            COMMAND_PROFILE,
            label=f"batch={batch_request_id}",
            **kwargs,
        )
        if not outcome.ok:
            return {
                "status": "unavailable",
                "status_code": outcome.response.status_code,
                "confirmed": 0,
                "failed": 0,
            }

        body = outcome.response.body if isinstance(outcome.response.body, dict) else {}
        confirmed = failed = 0
        now = datetime.now(timezone.utc)
        for entry in body.get("items") or []:
            request_item = entry.get("requestItem") or {}
            barcode = request_item.get("barcode")
            if not barcode:
                continue
            if str(entry.get("status", "")).upper() != "SUCCESS":
                failed += 1
                continue
            result = await db.execute(
                select(InventoryConfirmedState).where(
                    InventoryConfirmedState.connection_id == connection.id,
                    InventoryConfirmedState.barcode == str(barcode),
                )
            )
            state = result.scalar_one_or_none()
            if state is None:
                state = InventoryConfirmedState(connection_id=connection.id, barcode=str(barcode))
                db.add(state)
            if request_item.get("quantity") is not None:
                state.quantity = int(request_item["quantity"])
            if request_item.get("salePrice") is not None:
                state.sale_price = float(request_item["salePrice"])
            if request_item.get("listPrice") is not None:
                state.list_price = float(request_item["listPrice"])
            state.batch_request_id = batch_request_id
            state.confirmed_at = now
            confirmed += 1
        await db.commit()

    logger.info(
        "Batch %s confirmed=%d failed=%d", batch_request_id, confirmed, failed,
    )
    return {"status": body.get("status"), "confirmed": confirmed, "failed": failed}
