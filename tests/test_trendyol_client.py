"""
Tests for marketsync/integrations/trendyol.py - request shape and failure mapping.
Uses httpx.MockTransport; no network.
"""
import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from marketsync.integrations.trendyol import TrendyolClient


def _client(handler) -> TrendyolClient:
    return TrendyolClient(
        seller_id="123456",
        api_key="key",
        api_secret="secret",
        base_url="https://apigw.example.test/",
        integration_name="marketsync-test",
        transport=httpx.MockTransport(handler),
    )


class Recorder:
    def __init__(self, response: httpx.Response = None):
        self.requests: list[httpx.Request] = []
        self.response = response or httpx.Response(200, json={"content": []})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response


class TestRequestShape:
    async def test_auth_and_user_agent(self):
        recorder = Recorder()
        await _client(recorder).fetch_products(0, 50)

        request = recorder.requests[0]
        expected = base64.b64encode(b"key:secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        assert request.headers["User-Agent"] == "123456 - marketsync-test"

    async def test_order_window_in_epoch_ms(self):
        recorder = Recorder()
        start = datetime(2026, 3, 1, tzinfo=timezone.utc)
        end = datetime(2026, 3, 2, tzinfo=timezone.utc)
        await _client(recorder).fetch_orders(2, 100, start, end)

        request = recorder.requests[0]
        assert request.url.path == "/integration/order/sellers/123456/orders"
        assert request.url.params["page"] == "2"
        assert request.url.params["size"] == "100"
        assert request.url.params["startDate"] == str(int(start.timestamp() * 1000))
        assert request.url.params["endDate"] == str(int(end.timestamp() * 1000))

    async def test_none_params_dropped(self):
        recorder = Recorder()
        await _client(recorder).fetch_claims(0, 50)

        params = recorder.requests[0].url.params
        assert "startDate" not in params
        assert "endDate" not in params

    async def test_question_page_size_capped(self):
        recorder = Recorder()
        await _client(recorder).fetch_questions(0, 200)
        assert recorder.requests[0].url.params["size"] == "50"

    async def test_answer_posts_json(self):
        recorder = Recorder(httpx.Response(200))
        await _client(recorder).answer_question("q-1", "Yes, it is cotton.")

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path.endswith("/questions/q-1/answers")
        assert json.loads(request.content) == {"text": "Yes, it is cotton."}

    async def test_claim_issue_joins_item_ids(self):
        recorder = Recorder()
        await _client(recorder).create_claim_issue("c-1", ["i-1", "i-2"], "51", None)

        params = recorder.requests[0].url.params
        assert params["claimItemIdList"] == "i-1,i-2"
        assert params["claimIssueReasonId"] == "51"
        assert "description" not in params


class TestResponseMapping:
    async def test_json_body_and_headers(self):
        recorder = Recorder(httpx.Response(429, json={"message": "slow down"}, headers={"Retry-After": "3"}))
        response = await _client(recorder).fetch_products(0, 50)

        assert response.status_code == 429
        assert response.body == {"message": "slow down"}
        assert response.headers["retry-after"] == "3"

    async def test_text_body_kept(self):
        recorder = Recorder(httpx.Response(502, text="<html>bad gateway</html>"))
        response = await _client(recorder).fetch_products(0, 50)

        assert response.status_code == 502
        assert response.body == "<html>bad gateway</html>"

    async def test_empty_body_is_none(self):
        recorder = Recorder(httpx.Response(200))
        response = await _client(recorder).update_tracking_number("5001", "T1")
        assert response.body is None

    async def test_transport_error_has_no_status(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        response = await _client(handler).fetch_products(0, 50)

        assert response.status_code is None
        assert response.body["error"] == "ConnectError"
        assert "refused" in response.body["message"]
