"""
Tests for marketsync/services/retry_policy.py - classification and backoff loop.
"""
from unittest.mock import AsyncMock

import pytest

from marketsync.integrations.marketplace_base import RemoteResponse
from marketsync.services.retry_policy import (
    BackoffProfile,
    COMMAND_PROFILE,
    RetryDecision,
    call_with_retry,
    classify,
)


# ---------------------------------------------------------------------------
# classify
# ---------------------------------------------------------------------------

class TestClassify:
    @pytest.mark.parametrize("status", [200, 201, 204])
    def test_success(self, status):
        assert classify(status) == RetryDecision.OK

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_throttle_and_server_errors_retry(self, status):
        assert classify(status) == RetryDecision.RETRY

    def test_no_response_retries(self):
        """Transport failures (no status) are transient."""
        assert classify(None) == RetryDecision.RETRY

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_errors_permanent(self, status):
        assert classify(status, {"errorCode": "TOO_MANY_REQUESTS"}) == RetryDecision.PERMANENT

    def test_validation_error_permanent(self):
        assert classify(400, {"errors": [{"key": "invalid.barcode"}]}) == RetryDecision.PERMANENT

    def test_safe_business_code_retries(self):
        """A 4xx carrying a known transient business code is retried."""
        assert classify(409, {"errors": [{"code": "concurrent_modification"}]}) == RetryDecision.RETRY

    def test_non_dict_body_permanent(self):
        assert classify(422, "Unprocessable") == RetryDecision.PERMANENT


# ---------------------------------------------------------------------------
# BackoffProfile
# ---------------------------------------------------------------------------

class TestBackoffProfile:
    def test_exponential_growth_clamped(self):
        profile = BackoffProfile("t", max_attempts=10, min_delay=1.0, max_delay=8.0)
        assert [profile.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]

    def test_retry_after_honoured_up_to_max(self):
        profile = BackoffProfile("t", max_attempts=3, min_delay=1.0, max_delay=15.0)
        assert profile.delay_for(1, retry_after=10) == 10
        assert profile.delay_for(1, retry_after=120) == 15.0


# ---------------------------------------------------------------------------
# call_with_retry
# ---------------------------------------------------------------------------

class TestCallWithRetry:
    async def test_retries_then_succeeds(self):
        responses = [RemoteResponse(429), RemoteResponse(503), RemoteResponse(200, {"ok": True})]
        call = AsyncMock(side_effect=responses)
        sleep = AsyncMock()

        outcome = await call_with_retry(call, COMMAND_PROFILE, sleep=sleep)

        assert outcome.ok
        assert outcome.attempts == 3
        assert sleep.await_count == 2

    async def test_permanent_stops_immediately(self):
        call = AsyncMock(return_value=RemoteResponse(403, {"message": "forbidden"}))
        sleep = AsyncMock()

        outcome = await call_with_retry(call, COMMAND_PROFILE, sleep=sleep)

        assert outcome.decision == RetryDecision.PERMANENT
        assert outcome.attempts == 1
        sleep.assert_not_awaited()

    async def test_exhaustion_returns_last_response(self):
        """After max_attempts the last transient response is handed back."""
        call = AsyncMock(return_value=RemoteResponse(500, {"error": "boom"}))
        outcome = await call_with_retry(call, COMMAND_PROFILE, sleep=AsyncMock())

        assert outcome.decision == RetryDecision.RETRY
        assert outcome.attempts == COMMAND_PROFILE.max_attempts
        assert outcome.response.body == {"error": "boom"}

    async def test_retry_after_header_used(self):
        call = AsyncMock(side_effect=[
            RemoteResponse(429, headers={"Retry-After": "7"}),
            RemoteResponse(200),
        ])
        sleep = AsyncMock()
        await call_with_retry(call, COMMAND_PROFILE, sleep=sleep)
        sleep.assert_awaited_once_with(7.0)
