"""
Command handler - executes one marketplace write for a Command row.

The remote call goes through the shared retry loop with the COMMAND
profile. Success updates the affected entity's projected field and appends
one AuditEntry per transitioned entity. A failure leaves entities alone
and keeps the remote error body verbatim on the command.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.models.audit_entry import EXECUTOR_LOCAL
from marketsync.models.claim import ClaimItem
from marketsync.models.command import Command
from marketsync.models.enums import (
    CLAIM_ITEM_COMMAND_TRANSITIONS,
    ClaimItemStatus,
    CommandStatus,
    ErrorClass,
    JobStatus,
    JobType,
    QuestionStatus,
    WriteMode,
    command_transition,
)
from marketsync.models.job import Job
from marketsync.models.order import Order
from marketsync.models.question import Question
from marketsync.services.connections import load_connection
from marketsync.services.entity_store import append_audit
from marketsync.services.job_context import HandlerResult, JobContext
from marketsync.services.retry_policy import COMMAND_PROFILE, RetryDecision, call_with_retry

logger = logging.getLogger(__name__)

ANSWER_MIN_LENGTH = 10
ANSWER_MAX_LENGTH = 2000
PUSH_MAX_ITEMS = 1000


class CommandValidationError(ValueError):
    """The command request is unusable; rejected before anything is stored."""
    pass


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

def _id_list(payload: dict, *keys: str) -> list[str]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, list) and value:
            return [str(v) for v in value]
    return []


def validate_request(command_type: str, target_id: Optional[str], payload: Optional[dict]) -> dict:
    """Normalize a command payload into the stored request, or raise CommandValidationError."""
    payload = dict(payload or {})

    if command_type == JobType.POST_ANSWER.value:
        question_id = target_id or payload.get("question_id")
        text = (payload.get("text") or "").strip()
        if not question_id:
            raise CommandValidationError("question_id is required")
        if not ANSWER_MIN_LENGTH <= len(text) <= ANSWER_MAX_LENGTH:
            raise CommandValidationError(
                f"answer text must be {ANSWER_MIN_LENGTH}-{ANSWER_MAX_LENGTH} characters"
            )
        return {"question_id": str(question_id), "text": text}

    if command_type in (JobType.POST_CLAIM_APPROVE.value, JobType.POST_CLAIM_REJECT.value):
        claim_id = target_id or payload.get("claim_id")
        item_ids = _id_list(payload, "claim_item_ids", "claimLineItemIdList", "claimItemIdList")
        if not claim_id:
            raise CommandValidationError("claim_id is required")
        if not item_ids:
            raise CommandValidationError("claim_item_ids must be a non-empty list")
        request = {"claim_id": str(claim_id), "claim_item_ids": item_ids}
        if command_type == JobType.POST_CLAIM_REJECT.value:
            reason_id = payload.get("reason_id") or payload.get("claimIssueReasonId")
            if reason_id in (None, ""):
                raise CommandValidationError("reason_id is required")
            request["reason_id"] = str(reason_id)
            request["description"] = payload.get("description")
        return request

    if command_type == JobType.POST_UPDATE_TRACKING.value:
        package_id = target_id or payload.get("shipment_package_id")
        tracking = payload.get("tracking_number")
        if not package_id or not tracking:
            raise CommandValidationError("shipment_package_id and tracking_number are required")
        return {"shipment_package_id": str(package_id), "tracking_number": str(tracking)}

    if command_type == JobType.PUSH_PRICE_STOCK.value:
        items = payload.get("items")
        if not isinstance(items, list) or not items:
            raise CommandValidationError("items must be a non-empty list")
        if len(items) > PUSH_MAX_ITEMS:
            raise CommandValidationError(f"at most {PUSH_MAX_ITEMS} items per push")
        for item in items:
            if not isinstance(item, dict) or not item.get("barcode"):
                raise CommandValidationError("every item needs a barcode")
        return {"items": items}

    raise CommandValidationError(f"Unsupported command type: {command_type}")


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CommandAction:
    call: Callable[[Any, dict], Awaitable[Any]]
    # (db, connection, command, response_body) -> number of audited transitions
    apply: Callable[..., Awaitable[int]]
    # (db, connection, request) -> error message if the local state forbids the write
    precheck: Optional[Callable[..., Awaitable[Optional[str]]]] = None


async def _claim_items(db: AsyncSession, connection, item_ids: list[str]) -> list[ClaimItem]:
    result = await db.execute(
        select(ClaimItem).where(
            ClaimItem.connection_id == connection.id,
            ClaimItem.marketplace == connection.marketplace,
            ClaimItem.remote_id.in_(item_ids),
        )
    )
    return list(result.scalars().all())


def _claim_precheck(target: ClaimItemStatus):
    async def precheck(db, connection, request) -> Optional[str]:
        for item in await _claim_items(db, connection, request["claim_item_ids"]):
            if item.item_status is None:
                continue
            try:
                current = ClaimItemStatus(item.item_status)
            except ValueError:
                return f"claim item {item.remote_id} has unknown status {item.item_status}"
            if target not in CLAIM_ITEM_COMMAND_TRANSITIONS.get(current, frozenset()):
                return f"claim item {item.remote_id} is {item.item_status}; cannot move to {target.value}"
        return None
    return precheck


def _claim_apply(target: ClaimItemStatus):
    async def apply(db, connection, command, body) -> int:
        changed = 0
        for item in await _claim_items(db, connection, command.request["claim_item_ids"]):
            if item.item_status == target.value:
                continue
            previous = item.item_status
            item.item_status = target.value
            append_audit(
                db,
                connection_id=connection.id,
                marketplace=connection.marketplace,
                entity_type="claim_item",
                entity_id=item.id,
                previous_value=previous,
                new_value=target.value,
                executor_app=EXECUTOR_LOCAL,
                executor_user=command.executor_user,
                command_id=command.id,
                evidence={"response": body},
            )
            changed += 1
        return changed
    return apply


async def _answer_apply(db, connection, command, body) -> int:
    result = await db.execute(
        select(Question).where(
            Question.connection_id == connection.id,
            Question.marketplace == connection.marketplace,
            Question.remote_id == command.request["question_id"],
        )
    )
    question = result.scalar_one_or_none()
    if question is None or question.status == QuestionStatus.ANSWERED.value:
        return 0
    previous = question.status
    question.status = QuestionStatus.ANSWERED.value
    append_audit(
        db,
        connection_id=connection.id,
        marketplace=connection.marketplace,
        entity_type="question",
        entity_id=question.id,
        previous_value=previous,
        new_value=question.status,
        executor_app=EXECUTOR_LOCAL,
        executor_user=command.executor_user,
        command_id=command.id,
        evidence={"text": command.request["text"], "response": body},
    )
    return 1


async def _tracking_apply(db, connection, command, body) -> int:
    result = await db.execute(
        select(Order).where(
            Order.connection_id == connection.id,
            Order.marketplace == connection.marketplace,
            Order.shipment_package_id == command.request["shipment_package_id"],
        )
    )
    changed = 0
    for order in result.scalars().all():
        new_value = command.request["tracking_number"]
        if order.cargo_tracking_number == new_value:
            continue
        previous = order.cargo_tracking_number
        order.cargo_tracking_number = new_value
        append_audit(
            db,
            connection_id=connection.id,
            marketplace=connection.marketplace,
            entity_type="order",
            entity_id=order.id,
            field="cargo_tracking_number",
            previous_value=previous,
            new_value=new_value,
            executor_app=EXECUTOR_LOCAL,
            executor_user=command.executor_user,
            command_id=command.id,
            evidence={"response": body},
        )
        changed += 1
    return changed


async def _push_apply(db, connection, command, body) -> int:
    # Confirmed state is written when the batch result is polled.
    return 0


ACTIONS: dict[str, CommandAction] = {
    JobType.POST_ANSWER.value: CommandAction(
        call=lambda client, req: client.answer_question(req["question_id"], req["text"]),
        apply=_answer_apply,
    ),
    JobType.POST_CLAIM_APPROVE.value: CommandAction(
        call=lambda client, req: client.approve_claim_items(req["claim_id"], req["claim_item_ids"]),
        apply=_claim_apply(ClaimItemStatus.ACCEPTED),
        precheck=_claim_precheck(ClaimItemStatus.ACCEPTED),
    ),
    JobType.POST_CLAIM_REJECT.value: CommandAction(
        call=lambda client, req: client.create_claim_issue(
            req["claim_id"], req["claim_item_ids"], req["reason_id"], req.get("description"),
        ),
        apply=_claim_apply(ClaimItemStatus.ISSUE_CREATED),
        precheck=_claim_precheck(ClaimItemStatus.ISSUE_CREATED),
    ),
    JobType.POST_UPDATE_TRACKING.value: CommandAction(
        call=lambda client, req: client.update_tracking_number(req["shipment_package_id"], req["tracking_number"]),
        apply=_tracking_apply,
    ),
    JobType.PUSH_PRICE_STOCK.value: CommandAction(
        call=lambda client, req: client.update_price_and_inventory(req["items"]),
        apply=_push_apply,
    ),
}


# ---------------------------------------------------------------------------
# Job handler
# ---------------------------------------------------------------------------

def _batch_request_id(body: Any) -> Optional[str]:
    if isinstance(body, dict) and body.get("batchRequestId"):
        return str(body["batchRequestId"])
    return None


async def execute_command(job: Job, ctx: JobContext) -> HandlerResult:
    """Job handler for POST_* and PUSH_* job types."""
    async with ctx.session_factory() as db:
        result = await db.execute(select(Command).where(Command.job_id == job.id))
        command = result.scalar_one_or_none()
        if command is None:
            return HandlerResult(status=JobStatus.FAILED, error="No command attached to job")

        connection = await load_connection(db, command.connection_id)
        action = ACTIONS[command.command_type]
        command.status = command_transition(command.status, CommandStatus.RUNNING)
        command.attempt_count = (command.attempt_count or 0) + 1
        await db.commit()

        summary = {"command_id": str(command.id), "command_type": command.command_type}
        log_extra = {"command_id": str(command.id), "job_id": str(job.id), "connection_id": str(connection.id)}

        command_id = command.id
        remote_called = False
        try:
            if action.precheck is not None:
                problem = await action.precheck(db, connection, command.request)
                if problem:
                    return await _fail(db, command, summary, ErrorClass.PERMANENT, None, None, problem)

            if command.write_mode == WriteMode.LIVE.value and not ctx.settings.marketplace_write_enabled:
                return await _fail(
                    db, command, summary, ErrorClass.LOCAL, None, None, "marketplace writes disabled",
                )

            if command.write_mode == WriteMode.DRY_RUN.value:
                command.status = command_transition(command.status, CommandStatus.SUCCESS)
                command.response = {"dry_run": True}
                command.error = None
                await db.commit()
                logger.info("Command %s dry-run (no remote call)", str(command.id)[:8], extra=log_extra)
                return HandlerResult(
                    status=JobStatus.SUCCESS,
                    summary={**summary, "command_status": command.status, "dry_run": True},
                )

            client = ctx.client_factory(connection)
            remote_called = True
            outcome = await call_with_retry(
                lambda: action.call(client, command.request),
                COMMAND_PROFILE,
                sleep=ctx.sleep,
                label=f"{command.command_type} command={str(command.id)[:8]}",
            )

            if outcome.decision != RetryDecision.OK:
                classification = (
                    ErrorClass.RETRYABLE if outcome.decision == RetryDecision.RETRY else ErrorClass.PERMANENT
                )
                return await _fail(
                    db, command, summary, classification,
                    outcome.response.status_code, outcome.response.body, None,
                    attempts=outcome.attempts,
                )

            body = outcome.response.body
            command.status = command_transition(command.status, CommandStatus.SUCCESS)
            command.response = body if isinstance(body, dict) else {"ok": True, "body": body}
            command.error = None
            transitions = await action.apply(db, connection, command, body)
            await db.commit()
        except Exception as e:
            logger.error(
                "Command %s crashed: %s", str(command_id)[:8], str(e), exc_info=True, extra=log_extra,
            )
            await db.rollback()
            command = await db.get(Command, command_id)
            # Once the remote was called its effect is unknown; never re-arm
            classification = ErrorClass.PERMANENT if remote_called else ErrorClass.LOCAL
            return await _fail(db, command, summary, classification, None, None, str(e) or type(e).__name__)

        summary.update({
            "command_status": command.status,
            "attempts": outcome.attempts,
            "transitions": transitions,
        })
        batch_id = _batch_request_id(body)
        if batch_id:
            summary["batch_request_id"] = batch_id

        logger.info(
            "Command succeeded: id=%s type=%s transitions=%d",
            str(command.id)[:8], command.command_type, transitions, extra=log_extra,
        )
        return HandlerResult(status=JobStatus.SUCCESS, summary=summary)


async def _fail(
    db: AsyncSession,
    command: Command,
    summary: dict,
    classification: ErrorClass,
    status_code: Optional[int],
    body: Any,
    message: Optional[str],
    attempts: int = 0,
) -> HandlerResult:
    command.status = command_transition(command.status, CommandStatus.FAILED)
    command.error = {
        "classification": classification.value,
        "status_code": status_code,
        "body": body,
        "message": message or f"HTTP {status_code if status_code is not None else 'no-response'}",
    }
    await db.commit()
    logger.warning(
        "Command failed: id=%s type=%s classification=%s status=%s",
        str(command.id)[:8], command.command_type, classification.value, status_code,
        extra={"command_id": str(command.id)},
    )
    summary.update({
        "command_status": command.status,
        "classification": classification.value,
        "attempts": attempts,
    })
    return HandlerResult(status=JobStatus.FAILED, summary=summary, error=command.error["message"])
