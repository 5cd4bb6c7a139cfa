"""
Tests for the engine's HTTP surface - marketsync/api/jobs.py, commands.py,
webhooks.py and claims.py - driven through httpx against the ASGI app.
"""
import uuid
from unittest.mock import AsyncMock

import httpx
import pytest

from marketsync.api.deps import job_queue_dep
from marketsync.database import get_db
from marketsync.main import create_app
from marketsync.models.webhook import WebhookSubscription
from marketsync.utils.webhook_signatures import hash_secret

from fakes import ok

ANSWER = {
    "commandType": "POST_ANSWER",
    "idempotencyKey": "answer-q-1",
    "targetId": "q-1",
    "payload": {"text": "Yes, it is machine washable."},
}


@pytest.fixture
async def client(queue, session_factory):
    app = create_app()

    async def _db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[job_queue_dep] = lambda: queue
    app.dependency_overrides[get_db] = _db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _url(connection, path: str) -> str:
    return f"/api/v1/connections/{connection.id}/{path}"


# ---------------------------------------------------------------------------
# Sync submission and polling
# ---------------------------------------------------------------------------

class TestSyncEndpoints:
    async def test_submit_accepted(self, client, connection):
        response = await client.post(_url(connection, "sync/orders"))
        assert response.status_code == 202
        assert uuid.UUID(response.json()["jobId"])

    async def test_busy_connection_409(self, client, connection):
        first = (await client.post(_url(connection, "sync/orders"))).json()
        response = await client.post(_url(connection, "sync/claims"))

        assert response.status_code == 409
        assert response.json() == {"rejected": "locked", "activeJobId": first["jobId"]}

    async def test_unknown_resource_400(self, client, connection):
        assert (await client.post(_url(connection, "sync/warehouses"))).status_code == 400

    async def test_unknown_connection_404(self, client):
        response = await client.post(f"/api/v1/connections/{uuid.uuid4()}/sync/orders")
        assert response.status_code == 404

    async def test_malformed_connection_id_404(self, client):
        assert (await client.post("/api/v1/connections/not-a-uuid/sync/orders")).status_code == 404

    async def test_lock_backend_down_503(self, client, connection, queue):
        queue.lock_manager.backend.try_acquire = AsyncMock(side_effect=ConnectionError("refused"))
        assert (await client.post(_url(connection, "sync/orders"))).status_code == 503

    async def test_status_and_job_polling(self, client, connection, queue):
        job_id = (await client.post(_url(connection, "sync/orders"))).json()["jobId"]
        await queue.run_job(job_id)

        status = (await client.get(_url(connection, "status"))).json()
        assert status["cursors"]["orders"]["lastStatus"] == "success"
        assert status["lastJob"]["id"] == job_id

        job = await client.get(f"/api/v1/jobs/{job_id}")
        assert job.status_code == 200
        assert job.json()["status"] == "success"
        assert job.json()["summary"]["resource"] == "orders"

    async def test_unknown_job_404(self, client):
        assert (await client.get(f"/api/v1/jobs/{uuid.uuid4()}")).status_code == 404


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

class TestCommandEndpoints:
    async def test_new_command_202_replay_200(self, client, connection, queue):
        first = await client.post(_url(connection, "commands"), json=ANSWER)
        assert first.status_code == 202
        await queue.run_job(first.json()["jobId"])

        second = await client.post(_url(connection, "commands"), json=ANSWER)

        assert second.status_code == 200
        assert second.json()["replayed"] is True
        assert second.json()["commandId"] == first.json()["commandId"]
        assert second.json()["status"] == "success"

    async def test_in_flight_409(self, client, connection):
        await client.post(_url(connection, "commands"), json=ANSWER)
        response = await client.post(_url(connection, "commands"), json=ANSWER)

        assert response.status_code == 409
        assert response.json()["detail"]["rejected"] == "in_flight"

    async def test_locked_409(self, client, connection):
        await client.post(_url(connection, "sync/orders"))
        response = await client.post(_url(connection, "commands"), json=ANSWER)

        assert response.status_code == 409
        assert response.json()["detail"]["rejected"] == "locked"

    async def test_validation_422(self, client, connection):
        body = {**ANSWER, "payload": {"text": "ok"}}
        assert (await client.post(_url(connection, "commands"), json=body)).status_code == 422

    async def test_unknown_command_type_422(self, client, connection):
        body = {**ANSWER, "commandType": "DELETE_STORE"}
        assert (await client.post(_url(connection, "commands"), json=body)).status_code == 422

    async def test_missing_key_422(self, client, connection):
        body = {k: v for k, v in ANSWER.items() if k != "idempotencyKey"}
        assert (await client.post(_url(connection, "commands"), json=body)).status_code == 422

    async def test_command_detail(self, client, connection):
        receipt = (await client.post(_url(connection, "commands"), json=ANSWER)).json()
        response = await client.get(f"/api/v1/commands/{receipt['commandId']}")

        assert response.status_code == 200
        assert response.json()["idempotencyKey"] == "answer-q-1"
        assert response.json()["status"] == "queued"

    async def test_unknown_command_404(self, client):
        assert (await client.get("/api/v1/commands/nope")).status_code == 404


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------

class TestInventoryEndpoints:
    async def test_push_202(self, client, connection):
        response = await client.post(
            _url(connection, "inventory/push"),
            json={"items": [{"barcode": "BC-1", "quantity": 4, "salePrice": 19.9}]},
        )
        assert response.status_code == 202
        body = response.json()
        assert len(body["commands"]) == 1
        assert body["deferred"] == []
        assert body["unchanged"] == 0

    async def test_push_negative_quantity_422(self, client, connection):
        response = await client.post(
            _url(connection, "inventory/push"), json={"items": [{"barcode": "BC-1", "quantity": -1}]},
        )
        assert response.status_code == 422

    async def test_confirm_batch(self, client, connection, fake_client):
        fake_client.script("get_batch_request", ok({
            "status": "COMPLETED",
            "items": [{"requestItem": {"barcode": "BC-1", "quantity": 4}, "status": "SUCCESS"}],
        }))
        response = await client.post(_url(connection, "inventory/batches/batch-1/confirm"))

        assert response.status_code == 200
        assert response.json() == {"status": "COMPLETED", "confirmed": 1, "failed": 0}


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

class TestWebhookEndpoint:
    @pytest.fixture
    async def subscription(self, session_factory, connection):
        async with session_factory() as db:
            db.add(WebhookSubscription(
                connection_id=connection.id, provider="trendyol",
                authentication_type="API_KEY", api_key_hash=hash_secret("hook-key"),
            ))
            await db.commit()

    async def test_unverified_401(self, client, subscription):
        response = await client.post("/api/v1/webhooks/trendyol", json={"orderNumber": "1"})
        assert response.status_code == 401
        assert response.json() == {"ok": False, "error": "verification_failed"}

    async def test_verified_then_duplicate(self, client, subscription):
        headers = {"x-api-key": "hook-key"}
        first = await client.post("/api/v1/webhooks/trendyol", json={"orderNumber": "1"}, headers=headers)
        second = await client.post("/api/v1/webhooks/trendyol", json={"orderNumber": "1"}, headers=headers)

        assert first.status_code == 200
        assert first.json()["dedupHit"] is False
        assert first.json()["downstream"] == "enqueued"
        assert second.status_code == 200
        assert second.json()["dedupHit"] is True
        assert second.json()["eventId"] == first.json()["eventId"]


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------

class TestClaimEndpoint:
    async def test_missing_claim_404(self, client, connection):
        response = await client.get(_url(connection, "claims/claim-1"))
        assert response.status_code == 404
        assert response.json()["detail"] == "Claim not found"

    async def test_unknown_connection_404(self, client):
        response = await client.get(f"/api/v1/connections/{uuid.uuid4()}/claims/claim-1")
        assert response.json()["detail"] == "Connection not found"
