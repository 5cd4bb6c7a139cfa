"""
Rate/retry policy shared by the sync and command handlers.

`classify` is a pure decision over (status, body). Callers own the backoff
loop through `call_with_retry`, each with its own BackoffProfile: a sync
page retries harder than a single user-triggered write.

Rules:
- no response (transport failure), 429, 5xx  -> retry
- 401, 403                                   -> permanent
- other 4xx                                  -> permanent, unless the body
  carries a known safe-to-retry business code
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from marketsync.integrations.marketplace_base import RemoteResponse

logger = logging.getLogger(__name__)

SAFE_RETRY_CODES = frozenset({
    "TOO_MANY_REQUESTS",
    "SERVICE_UNAVAILABLE",
    "LOCK_TIMEOUT",
    "CONCURRENT_MODIFICATION",
    "REQUEST_TIMEOUT",
})


class RetryDecision(str, enum.Enum):
    OK = "ok"
    RETRY = "retry"
    PERMANENT = "permanent"


def _body_codes(body: Any) -> set:
    """Business error codes a response body may carry."""
    codes = set()
    if isinstance(body, dict):
        for key in ("errorCode", "code", "key"):
            value = body.get(key)
            if isinstance(value, str):
                codes.add(value.upper())
        errors = body.get("errors")
        if isinstance(errors, list):
            for err in errors:
                codes |= _body_codes(err)
    return codes


def classify(status_code: Optional[int], body: Any = None) -> RetryDecision:
    """Map an HTTP outcome to ok / retry / permanent."""
    if status_code is None:
        return RetryDecision.RETRY
    if status_code < 400:
        return RetryDecision.OK
    if status_code == 429 or status_code >= 500:
        return RetryDecision.RETRY
    if status_code in (401, 403):
        return RetryDecision.PERMANENT
    if _body_codes(body) & SAFE_RETRY_CODES:
        return RetryDecision.RETRY
    return RetryDecision.PERMANENT


@dataclass(frozen=True)
class BackoffProfile:
    name: str
    max_attempts: int
    min_delay: float
    max_delay: float
    multiplier: float = 2.0

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number `attempt` (1-based), clamped to [min, max]."""
        delay = self.min_delay * (self.multiplier ** max(0, attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return max(self.min_delay, min(delay, self.max_delay))


SYNC_PAGE_PROFILE = BackoffProfile("sync_page", max_attempts=6, min_delay=1.0, max_delay=60.0)
COMMAND_PROFILE = BackoffProfile("command", max_attempts=3, min_delay=1.0, max_delay=15.0)


@dataclass
class RetryOutcome:
    response: RemoteResponse
    decision: RetryDecision
    attempts: int

    @property
    def ok(self) -> bool:
        return self.decision == RetryDecision.OK


async def call_with_retry(
    call: Callable[[], Awaitable[RemoteResponse]],
    profile: BackoffProfile,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "",
) -> RetryOutcome:
    """
    Run `call` until it succeeds, fails permanently, or the profile's
    attempt ceiling is reached. Never raises for HTTP outcomes.
    """
    attempt = 0
    while True:
        attempt += 1
        response = await call()
        decision = classify(response.status_code, response.body)

        if decision != RetryDecision.RETRY:
            return RetryOutcome(response=response, decision=decision, attempts=attempt)

        if attempt >= profile.max_attempts:
            logger.warning(
                "Retries exhausted (%s) %s: status=%s attempts=%d",
                profile.name, label, response.status_code, attempt,
            )
            return RetryOutcome(response=response, decision=decision, attempts=attempt)

        delay = profile.delay_for(attempt, response.retry_after_seconds)
        logger.info(
            "Retrying (%s) %s: status=%s attempt=%d/%d backoff=%.1fs",
            profile.name, label, response.status_code, attempt, profile.max_attempts, delay,
        )
        await sleep(delay)
