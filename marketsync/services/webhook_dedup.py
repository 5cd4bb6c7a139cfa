"""
Webhook intake - verify, fingerprint, record once, trigger a re-sync.

Order of operations:
1. Credentials checked against active subscriptions for the provider.
   Failure is recorded (verify_status=failed) and answered with 401.
2. Body hash and event key computed from the canonical body.
3. Unique insert on event_key. A collision marks the stored row as a
   dedup hit and stops there.
4. First delivery submits a sync job for the subscription's resource.
   A busy connection is recorded as deferred_locked; the scheduler
   picks it up on its next pass.

Every verified delivery gets a 200, including duplicates and deliveries
whose downstream submission failed, so the provider does not redeliver.
"""
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from marketsync.errors import WebhookVerificationError
from marketsync.models.enums import JobType, VerifyStatus
from marketsync.models.webhook import WebhookEvent, WebhookSubscription
from marketsync.services.job_queue import JobQueue
from marketsync.utils.dedup import compute_body_hash, make_event_key
from marketsync.utils.webhook_signatures import extract_api_key, extract_basic_credentials, match_subscription

logger = logging.getLogger(__name__)

EVENT_TYPE_KEYS = ("eventType", "event_type", "type", "shipmentPackageStatus", "status")
OBJECT_ID_KEYS = ("orderNumber", "shipmentPackageId", "claimId", "questionId", "id")

DOWNSTREAM_ENQUEUED = "enqueued"
DOWNSTREAM_DEFERRED = "deferred_locked"
DOWNSTREAM_SKIPPED = "skipped"
DOWNSTREAM_ERROR = "error"


@dataclass
class WebhookReceipt:
    status_code: int
    event_id: Optional[str] = None
    dedup_hit: bool = False
    downstream_status: Optional[str] = None
    job_id: Optional[str] = None

    def as_dict(self) -> dict:
        if self.status_code == 401:
            return {"ok": False, "error": "verification_failed"}
        return {
            "ok": True,
            "eventId": self.event_id,
            "dedupHit": self.dedup_hit,
            "downstream": self.downstream_status,
            "jobId": self.job_id,
        }


def _parse_body(body: bytes) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None


def _stored_body(parsed: Any, body: bytes) -> dict:
    if isinstance(parsed, dict):
        return parsed
    if parsed is not None:
        return {"payload": parsed}
    return {"unparsed": body.decode("utf-8", errors="replace")[:4000]}


def _pick(parsed: Any, keys: tuple) -> Optional[str]:
    if not isinstance(parsed, dict):
        return None
    for key in keys:
        value = parsed.get(key)
        if value is not None and value != "" and not isinstance(value, (dict, list)):
            return str(value)[:100]
    return None


def extract_event_identity(parsed: Any) -> tuple[Optional[str], Optional[str]]:
    """(event_type, remote_object_id) from a provider payload, where present."""
    return _pick(parsed, EVENT_TYPE_KEYS), _pick(parsed, OBJECT_ID_KEYS)


class WebhookDedupProcessor:
    def __init__(self, job_queue: JobQueue, session_factory=None):
        self.job_queue = job_queue
        self.session_factory = session_factory or job_queue.session_factory

    async def _subscriptions(self, provider: str) -> list:
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookSubscription).where(
                    WebhookSubscription.provider == provider,
                    WebhookSubscription.active.is_(True),
                )
            )
            return list(result.scalars().all())

    async def verify(self, provider: str, headers: Mapping[str, str]):
        """Matching subscription for the request credentials. Raises WebhookVerificationError."""
        if not extract_api_key(headers) and not extract_basic_credentials(headers):
            raise WebhookVerificationError("no webhook credentials in request")
        subscription = match_subscription(headers, await self._subscriptions(provider))
        if subscription is None:
            raise WebhookVerificationError("no matching webhook subscription credentials")
        return subscription

    async def receive(self, provider: str, headers: Mapping[str, str], body: bytes) -> WebhookReceipt:
        provider = provider.lower()
        parsed = _parse_body(body)
        body_hash = compute_body_hash(body)
        event_type, remote_object_id = extract_event_identity(parsed)

        try:
            subscription = await self.verify(provider, headers)
        except WebhookVerificationError as e:
            event_id = await self._record_unverified(
                provider, parsed, body, body_hash, event_type, remote_object_id, str(e),
            )
            logger.warning("Webhook verification failed: provider=%s event=%s", provider, event_id[:8])
            return WebhookReceipt(status_code=401, event_id=event_id)

        connection_id = subscription.connection_id
        event_key = make_event_key(provider, str(connection_id), event_type, remote_object_id, body_hash)
        now = datetime.now(timezone.utc)

        try:
            async with self.session_factory() as db:
                event = WebhookEvent(
                    event_key=event_key,
                    body_hash=body_hash,
                    provider=provider,
                    event_type=event_type,
                    remote_object_id=remote_object_id,
                    connection_id=connection_id,
                    verify_status=VerifyStatus.VERIFIED.value,
                    dedup_hit=False,
                    dedup_count=0,
                    raw_body=_stored_body(parsed, body),
                    received_at=now,
                    last_seen_at=now,
                )
                db.add(event)
                await db.commit()
                event_id = event.id
        except IntegrityError:
            return await self._record_duplicate(event_key, now)

        logger.info(
            "Webhook accepted: provider=%s connection=%s type=%s object=%s",
            provider, str(connection_id)[:8], event_type, remote_object_id,
            extra={"provider": provider, "connection_id": str(connection_id)},
        )
        return await self._trigger_downstream(event_id, connection_id, subscription.event_resource)

    async def _record_unverified(self, provider, parsed, body, body_hash, event_type, remote_object_id, reason) -> str:
        async with self.session_factory() as db:
            event = WebhookEvent(
                event_key=f"unverified:{uuid.uuid4().hex}",
                body_hash=body_hash,
                provider=provider,
                event_type=event_type,
                remote_object_id=remote_object_id,
                verify_status=VerifyStatus.FAILED.value,
                raw_body=_stored_body(parsed, body),
                error_message=reason,
            )
            db.add(event)
            await db.commit()
            return str(event.id)

    async def _record_duplicate(self, event_key: str, now: datetime) -> WebhookReceipt:
        async with self.session_factory() as db:
            # Increment in SQL so concurrent redeliveries each count
            await db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_key == event_key)
                .values(
                    dedup_hit=True,
                    dedup_count=func.coalesce(WebhookEvent.dedup_count, 0) + 1,
                    last_seen_at=now,
                )
            )
            await db.commit()
            result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_key == event_key))
            event = result.scalar_one()
            logger.info(
                "Webhook duplicate: event=%s count=%d", str(event.id)[:8], event.dedup_count,
                extra={"provider": event.provider},
            )
            return WebhookReceipt(
                status_code=200,
                event_id=str(event.id),
                dedup_hit=True,
                downstream_status=event.downstream_status,
                job_id=str(event.downstream_job_id) if event.downstream_job_id else None,
            )

    async def _trigger_downstream(self, event_id, connection_id, event_resource: str) -> WebhookReceipt:
        job_id = None
        error = None
        try:
            job_type = JobType(f"SYNC_{event_resource.upper()}")
        except ValueError:
            downstream = DOWNSTREAM_SKIPPED
            error = f"unknown event resource: {event_resource}"
        else:
            try:
                submitted = await self.job_queue.submit(connection_id, job_type.value, {"trigger": "webhook"})
                if submitted.accepted:
                    downstream, job_id = DOWNSTREAM_ENQUEUED, submitted.job_id
                else:
                    downstream = DOWNSTREAM_DEFERRED
            except Exception as e:
                logger.error(
                    "Webhook downstream submit failed: event=%s error=%s", str(event_id)[:8], str(e),
                    exc_info=True,
                )
                downstream, error = DOWNSTREAM_ERROR, str(e)[:500]

        async with self.session_factory() as db:
            event = await db.get(WebhookEvent, event_id)
            event.downstream_status = downstream
            event.downstream_job_id = uuid.UUID(job_id) if job_id else None
            event.error_message = error
            await db.commit()

        return WebhookReceipt(
            status_code=200,
            event_id=str(event_id),
            downstream_status=downstream,
            job_id=job_id,
        )
