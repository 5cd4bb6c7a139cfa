"""
Tests for marketsync/services/webhook_dedup.py - verify, record once, trigger re-sync.
"""
import asyncio
import base64
import json
import uuid
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from marketsync.models.job import Job
from marketsync.models.webhook import WebhookEvent, WebhookSubscription
from marketsync.services.webhook_dedup import WebhookDedupProcessor, extract_event_identity
from marketsync.utils.webhook_signatures import hash_secret

API_KEY = "wh-key-0123456789"
GOOD_HEADERS = {"x-api-key": API_KEY}

EVENT = {
    "orderNumber": "1001",
    "shipmentPackageId": 5001,
    "shipmentPackageStatus": "Shipped",
}


def _body(payload=EVENT, **dumps_kwargs) -> bytes:
    return json.dumps(payload, **dumps_kwargs).encode("utf-8")


@pytest.fixture
async def subscription(session_factory, connection):
    async with session_factory() as db:
        sub = WebhookSubscription(
            connection_id=connection.id,
            provider="trendyol",
            authentication_type="API_KEY",
            api_key_hash=hash_secret(API_KEY),
            event_resource="orders",
        )
        db.add(sub)
        await db.commit()
        return sub


@pytest.fixture
def processor(queue):
    return WebhookDedupProcessor(queue)


async def _events(session_factory) -> list:
    async with session_factory() as db:
        return (await db.execute(select(WebhookEvent).order_by(WebhookEvent.received_at))).scalars().all()


async def _job_count(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(Job))).scalar_one()


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class TestVerification:
    async def test_bad_key_rejected_and_recorded(self, processor, subscription, session_factory):
        receipt = await processor.receive("trendyol", {"x-api-key": "wrong"}, _body())

        assert receipt.status_code == 401
        assert receipt.as_dict() == {"ok": False, "error": "verification_failed"}
        events = await _events(session_factory)
        assert len(events) == 1
        assert events[0].verify_status == "failed"
        assert events[0].event_key.startswith("unverified:")
        assert events[0].connection_id is None
        assert await _job_count(session_factory) == 0

    async def test_failure_reason_recorded(self, processor, subscription, session_factory):
        await processor.receive("trendyol", {}, _body())
        await processor.receive("trendyol", {"x-api-key": "wrong"}, _body())

        reasons = sorted(event.error_message for event in await _events(session_factory))
        assert reasons == [
            "no matching webhook subscription credentials",
            "no webhook credentials in request",
        ]

    async def test_repeated_bad_deliveries_each_recorded(self, processor, subscription, session_factory):
        await processor.receive("trendyol", {}, _body())
        await processor.receive("trendyol", {}, _body())
        assert len(await _events(session_factory)) == 2

    async def test_inactive_subscription_ignored(self, processor, subscription, session_factory):
        async with session_factory() as db:
            sub = await db.get(WebhookSubscription, subscription.id)
            sub.active = False
            await db.commit()
        receipt = await processor.receive("trendyol", GOOD_HEADERS, _body())
        assert receipt.status_code == 401

    async def test_basic_auth_subscription(self, processor, connection, session_factory):
        async with session_factory() as db:
            db.add(WebhookSubscription(
                connection_id=connection.id, provider="trendyol",
                authentication_type="BASIC_AUTHENTICATION",
                basic_username="hook", basic_password_hash=hash_secret("s3cret"),
            ))
            await db.commit()
        token = base64.b64encode(b"hook:s3cret").decode()

        receipt = await processor.receive("trendyol", {"Authorization": f"Basic {token}"}, _body())
        assert receipt.status_code == 200


# ---------------------------------------------------------------------------
# Dedup
# ---------------------------------------------------------------------------

class TestDedup:
    async def test_first_delivery_enqueues_sync(self, processor, subscription, session_factory, connection):
        receipt = await processor.receive("trendyol", GOOD_HEADERS, _body())

        assert receipt.status_code == 200
        assert receipt.dedup_hit is False
        assert receipt.downstream_status == "enqueued"
        async with session_factory() as db:
            job = await db.get(Job, uuid.UUID(receipt.job_id))
        assert job.job_type == "SYNC_ORDERS"
        assert job.connection_id == connection.id
        assert job.request_payload == {"trigger": "webhook"}

        event = (await _events(session_factory))[0]
        assert event.verify_status == "verified"
        assert event.event_type == "Shipped"
        assert event.remote_object_id == "1001"
        assert str(event.downstream_job_id) == receipt.job_id

    async def test_redelivery_is_dedup_hit(self, processor, subscription, session_factory):
        """Same event with different JSON formatting collapses onto the first row."""
        first = await processor.receive("trendyol", GOOD_HEADERS, _body())
        second = await processor.receive("trendyol", GOOD_HEADERS, _body(indent=2, sort_keys=True))

        assert second.status_code == 200
        assert second.dedup_hit is True
        assert second.event_id == first.event_id
        assert second.job_id == first.job_id
        assert await _job_count(session_factory) == 1

        events = await _events(session_factory)
        assert len(events) == 1
        assert events[0].dedup_hit is True
        assert events[0].dedup_count == 1

    async def test_concurrent_redeliveries_all_counted(self, processor, subscription, session_factory):
        await processor.receive("trendyol", GOOD_HEADERS, _body())

        receipts = await asyncio.gather(*(
            processor.receive("trendyol", GOOD_HEADERS, _body()) for _ in range(5)
        ))

        assert all(r.dedup_hit for r in receipts)
        events = await _events(session_factory)
        assert len(events) == 1
        assert events[0].dedup_count == 5

    async def test_changed_body_is_new_event(self, processor, subscription, queue, session_factory):
        first = await processor.receive("trendyol", GOOD_HEADERS, _body())
        await queue.run_job(first.job_id)

        second = await processor.receive("trendyol", GOOD_HEADERS, _body({**EVENT, "shipmentPackageStatus": "Delivered"}))

        assert second.dedup_hit is False
        assert second.downstream_status == "enqueued"
        assert len(await _events(session_factory)) == 2

    async def test_busy_connection_deferred(self, processor, subscription, queue, connection, session_factory):
        """A locked connection is acknowledged and left for the scheduler."""
        await queue.submit(connection.id, "SYNC_CLAIMS")

        receipt = await processor.receive("trendyol", GOOD_HEADERS, _body())

        assert receipt.status_code == 200
        assert receipt.downstream_status == "deferred_locked"
        assert receipt.job_id is None
        assert (await _events(session_factory))[0].downstream_status == "deferred_locked"

    async def test_unknown_resource_skipped(self, processor, subscription, session_factory):
        async with session_factory() as db:
            sub = await db.get(WebhookSubscription, subscription.id)
            sub.event_resource = "warehouses"
            await db.commit()

        receipt = await processor.receive("trendyol", GOOD_HEADERS, _body())

        assert receipt.downstream_status == "skipped"
        event = (await _events(session_factory))[0]
        assert "warehouses" in event.error_message

    async def test_submit_error_still_acknowledged(self, processor, subscription, session_factory):
        processor.job_queue.submit = AsyncMock(side_effect=RuntimeError("lock backend unavailable"))

        receipt = await processor.receive("trendyol", GOOD_HEADERS, _body())

        assert receipt.status_code == 200
        assert receipt.downstream_status == "error"
        assert receipt.as_dict()["ok"] is True

    async def test_non_json_body_stored(self, processor, subscription, session_factory):
        receipt = await processor.receive("trendyol", GOOD_HEADERS, b"not json at all")
        assert receipt.status_code == 200
        assert (await _events(session_factory))[0].raw_body == {"unparsed": "not json at all"}


class TestExtractEventIdentity:
    def test_prefers_event_type_then_status(self):
        assert extract_event_identity({"eventType": "ClaimCreated", "status": "x", "claimId": 7}) == ("ClaimCreated", "7")

    def test_nested_values_ignored(self):
        assert extract_event_identity({"status": {"name": "x"}, "id": [1]}) == (None, None)

    def test_non_dict(self):
        assert extract_event_identity([1, 2]) == (None, None)
