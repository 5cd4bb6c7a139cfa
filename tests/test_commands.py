"""
Tests for marketsync/services/commands.py and command_handler.py -
idempotent admission and execution of marketplace writes.
"""
import uuid
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from marketsync.errors import CommandInFlightError, ConnectionBusyError, UnknownJobTypeError
from marketsync.models.audit_entry import AuditEntry, EXECUTOR_LOCAL
from marketsync.models.claim import Claim, ClaimItem
from marketsync.models.command import Command
from marketsync.models.job import Job
from marketsync.models.order import Order
from marketsync.models.question import Question
from marketsync.services.command_handler import CommandValidationError, validate_request
from marketsync.services.commands import CommandService
from marketsync.services.job_queue import JobQueue

from fakes import no_sleep, ok

ANSWER_TEXT = "Yes, it fits a 20cm pot."


@pytest.fixture
def service(queue):
    return CommandService(queue)


async def _seed_question(session_factory, connection, remote_id="q-1", status="WAITING_FOR_ANSWER"):
    async with session_factory() as db:
        question = Question(
            connection_id=connection.id, marketplace="trendyol", remote_id=remote_id,
            status=status, text="Does it fit?", raw={"id": remote_id},
        )
        db.add(question)
        await db.commit()
        return question


async def _seed_claim(session_factory, connection, item_status="WaitingInAction"):
    async with session_factory() as db:
        claim = Claim(
            connection_id=connection.id, marketplace="trendyol", remote_id="claim-1",
            status="Created", raw={"id": "claim-1"},
        )
        db.add(claim)
        await db.flush()
        item = ClaimItem(
            connection_id=connection.id, marketplace="trendyol", remote_id="ci-1",
            claim_db_id=claim.id, claim_remote_id="claim-1", item_status=item_status,
            raw={"id": "ci-1"},
        )
        db.add(item)
        await db.commit()
        return claim, item


async def _load_command(session_factory, command_id) -> Command:
    async with session_factory() as db:
        return await db.get(Command, uuid.UUID(command_id))


async def _count(session_factory, model, *where) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


async def _answer(service, connection, key="answer-q-1", text=ANSWER_TEXT):
    return await service.submit(connection.id, "POST_ANSWER", "q-1", key, {"text": text}, executor_user="agent-7")


# ---------------------------------------------------------------------------
# Idempotent replay
# ---------------------------------------------------------------------------

class TestIdempotency:
    async def test_success_then_replay(self, service, queue, connection, fake_client, session_factory):
        """Resubmitting a successful key returns the same command without a second remote call or audit."""
        await _seed_question(session_factory, connection)
        fake_client.script("answer_question", ok({"id": "a-1"}))

        first = await _answer(service, connection)
        assert first.replayed is False
        assert await queue.run_job(first.job_id) == "success"

        second = await _answer(service, connection)

        assert second.replayed is True
        assert second.command_id == first.command_id
        assert second.status == "success"
        assert second.response == {"id": "a-1"}
        assert len(fake_client.calls_to("answer_question")) == 1
        assert await _count(session_factory, AuditEntry) == 1
        assert await _count(session_factory, Job) == 1

    async def test_success_updates_question_and_audits(self, service, queue, connection, fake_client, session_factory):
        question = await _seed_question(session_factory, connection)
        receipt = await _answer(service, connection)
        await queue.run_job(receipt.job_id)

        async with session_factory() as db:
            stored = await db.get(Question, question.id)
            entry = (await db.execute(select(AuditEntry))).scalar_one()
        assert stored.status == "ANSWERED"
        assert entry.previous_value == "WAITING_FOR_ANSWER"
        assert entry.new_value == "ANSWERED"
        assert entry.executor_app == EXECUTOR_LOCAL
        assert entry.executor_user == "agent-7"
        assert str(entry.command_id) == receipt.command_id

    async def test_in_flight_duplicate_rejected(self, service, connection):
        await _answer(service, connection)
        with pytest.raises(CommandInFlightError) as exc:
            await _answer(service, connection)
        assert exc.value.status == "queued"

    async def test_key_whitespace_ignored(self, service, queue, connection):
        first = await _answer(service, connection, key="  k-1 ")
        await queue.run_job(first.job_id)
        second = await _answer(service, connection, key="k-1")
        assert second.command_id == first.command_id


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------

class TestFailures:
    async def test_permanent_failure_keeps_body_and_replays(self, service, queue, connection, fake_client, session_factory):
        """A 4xx is stored verbatim and a resubmission gets the stored failure back."""
        body = {"errors": [{"key": "qna.answer.too.short", "message": "Answer too short"}]}
        fake_client.script("answer_question", ok(body, status_code=400))

        first = await _answer(service, connection)
        assert await queue.run_job(first.job_id) == "failed"

        command = await _load_command(session_factory, first.command_id)
        assert command.status == "failed"
        assert command.error["classification"] == "permanent"
        assert command.error["status_code"] == 400
        assert command.error["body"] == body

        again = await _answer(service, connection)
        assert again.replayed is True
        assert again.status == "failed"
        assert again.error["body"] == body
        assert len(fake_client.calls_to("answer_question")) == 1

    async def test_retryable_failure_rearmed(self, service, queue, connection, fake_client, session_factory):
        """Exhausted transient errors leave the command re-armable under the same key."""
        fake_client.script("answer_question", *[ok({"error": "busy"}, status_code=503) for _ in range(3)])

        first = await _answer(service, connection)
        await queue.run_job(first.job_id)
        command = await _load_command(session_factory, first.command_id)
        assert command.error["classification"] == "retryable"
        assert len(fake_client.calls_to("answer_question")) == 3

        fake_client.script("answer_question", ok({"id": "a-1"}))
        second = await _answer(service, connection)

        assert second.replayed is False
        assert second.command_id == first.command_id
        assert second.job_id != first.job_id
        assert second.status == "queued"
        assert await queue.run_job(second.job_id) == "success"

        command = await _load_command(session_factory, first.command_id)
        assert command.status == "success"
        assert command.error is None
        assert command.attempt_count == 2

    async def test_crash_before_remote_call_is_local(self, session_factory, lock_manager, settings, connection):
        def broken_factory(_connection):
            raise RuntimeError("credentials unreadable")

        queue = JobQueue(
            session_factory=session_factory, lock_manager=lock_manager,
            client_factory=broken_factory, settings=settings, sleep=no_sleep,
        )
        service = CommandService(queue)

        receipt = await _answer(service, connection)
        assert await queue.run_job(receipt.job_id) == "failed"

        command = await _load_command(session_factory, receipt.command_id)
        assert command.status == "failed"
        assert command.error["classification"] == "local"
        assert "credentials unreadable" in command.error["message"]

        again = await _answer(service, connection)
        assert again.replayed is False
        assert again.status == "queued"

    async def test_crash_after_remote_call_is_permanent(self, service, queue, connection, fake_client, session_factory):
        """Once the request may have reached the marketplace the command is never re-sent."""
        fake_client.answer_question = AsyncMock(side_effect=RuntimeError("socket closed mid-read"))

        receipt = await _answer(service, connection)
        await queue.run_job(receipt.job_id)

        command = await _load_command(session_factory, receipt.command_id)
        assert command.error["classification"] == "permanent"
        assert (await _answer(service, connection)).replayed is True

    async def test_failure_leaves_entity_untouched(self, service, queue, connection, fake_client, session_factory):
        question = await _seed_question(session_factory, connection)
        fake_client.script("answer_question", ok({"message": "forbidden"}, status_code=403))

        receipt = await _answer(service, connection)
        await queue.run_job(receipt.job_id)

        async with session_factory() as db:
            assert (await db.get(Question, question.id)).status == "WAITING_FOR_ANSWER"
        assert await _count(session_factory, AuditEntry) == 0


# ---------------------------------------------------------------------------
# Admission errors
# ---------------------------------------------------------------------------

class TestAdmission:
    async def test_validation_error_stores_nothing(self, service, connection, session_factory, lock_manager):
        with pytest.raises(CommandValidationError):
            await _answer(service, connection, text="short")
        assert await _count(session_factory, Command) == 0
        assert await _count(session_factory, Job) == 0
        assert await lock_manager.is_locked(str(connection.id)) is False

    async def test_unknown_command_type(self, service, connection):
        with pytest.raises(UnknownJobTypeError):
            await service.submit(connection.id, "SYNC_ORDERS", None, "k", {})

    async def test_missing_key(self, service, connection):
        with pytest.raises(CommandValidationError):
            await service.submit(connection.id, "POST_ANSWER", "q-1", "  ", {"text": ANSWER_TEXT})

    async def test_locked_connection_rejects_without_row(self, service, queue, connection, session_factory):
        await queue.submit(connection.id, "SYNC_ORDERS")
        with pytest.raises(ConnectionBusyError):
            await _answer(service, connection)
        assert await _count(session_factory, Command) == 0


# ---------------------------------------------------------------------------
# Dry-run
# ---------------------------------------------------------------------------

class TestDryRun:
    async def test_writes_disabled_skips_remote(self, service, queue, connection, fake_client, settings, session_factory):
        settings.marketplace_write_enabled = False
        question = await _seed_question(session_factory, connection)

        receipt = await _answer(service, connection)
        assert await queue.run_job(receipt.job_id) == "success"

        command = await _load_command(session_factory, receipt.command_id)
        assert command.response == {"dry_run": True}
        assert fake_client.calls_to("answer_question") == []
        async with session_factory() as db:
            assert (await db.get(Question, question.id)).status == "WAITING_FOR_ANSWER"

    async def test_dry_run_replayed_while_writes_disabled(self, service, queue, connection, settings, session_factory):
        settings.marketplace_write_enabled = False
        await _seed_question(session_factory, connection)
        first = await _answer(service, connection)
        await queue.run_job(first.job_id)

        again = await _answer(service, connection)

        assert again.replayed is True
        assert again.command_id == first.command_id
        assert again.response == {"dry_run": True}

    async def test_enabling_writes_sends_same_key_for_real(
        self, service, queue, connection, fake_client, settings, session_factory,
    ):
        settings.marketplace_write_enabled = False
        await _seed_question(session_factory, connection)
        dry = await _answer(service, connection)
        await queue.run_job(dry.job_id)

        settings.marketplace_write_enabled = True
        live = await _answer(service, connection)
        assert live.replayed is False
        assert live.command_id != dry.command_id
        assert await queue.run_job(live.job_id) == "success"

        assert len(fake_client.calls_to("answer_question")) == 1
        command = await _load_command(session_factory, live.command_id)
        assert command.write_mode == "live"
        assert command.response != {"dry_run": True}

    async def test_live_command_not_faked_when_writes_turned_off(
        self, service, queue, connection, fake_client, settings, session_factory,
    ):
        """A live command that runs after writes were disabled fails re-armable, never as a dry-run success."""
        await _seed_question(session_factory, connection)
        receipt = await _answer(service, connection)
        settings.marketplace_write_enabled = False

        assert await queue.run_job(receipt.job_id) == "failed"

        command = await _load_command(session_factory, receipt.command_id)
        assert command.status == "failed"
        assert command.error["classification"] == "local"
        assert fake_client.calls_to("answer_question") == []


# ---------------------------------------------------------------------------
# Claims and tracking
# ---------------------------------------------------------------------------

class TestClaimCommands:
    async def test_approve_moves_item_to_accepted(self, service, queue, connection, fake_client, session_factory):
        _, item = await _seed_claim(session_factory, connection)
        receipt = await service.submit(
            connection.id, "POST_CLAIM_APPROVE", "claim-1", "approve-claim-1",
            {"claim_item_ids": ["ci-1"]},
        )
        assert await queue.run_job(receipt.job_id) == "success"

        assert fake_client.calls_to("approve_claim_items") == [{"claim_id": "claim-1", "claim_item_ids": ["ci-1"]}]
        async with session_factory() as db:
            assert (await db.get(ClaimItem, item.id)).item_status == "Accepted"
            entry = (await db.execute(select(AuditEntry))).scalar_one()
        assert (entry.entity_type, entry.previous_value, entry.new_value) == ("claim_item", "WaitingInAction", "Accepted")

    async def test_approve_replayed_without_second_audit(self, service, queue, connection, fake_client, session_factory):
        await _seed_claim(session_factory, connection)
        args = (connection.id, "POST_CLAIM_APPROVE", "claim-1", "approve-claim-1", {"claim_item_ids": ["ci-1"]})
        first = await service.submit(*args)
        await queue.run_job(first.job_id)

        second = await service.submit(*args)

        assert second.replayed is True
        assert second.command_id == first.command_id
        assert len(fake_client.calls_to("approve_claim_items")) == 1
        assert await _count(session_factory, AuditEntry, AuditEntry.entity_type == "claim_item") == 1
        assert await _count(session_factory, Command) == 1

    async def test_approve_of_settled_item_refused_locally(self, service, queue, connection, fake_client, session_factory):
        """An item already resolved cannot be approved; nothing is sent."""
        await _seed_claim(session_factory, connection, item_status="Rejected")
        receipt = await service.submit(
            connection.id, "POST_CLAIM_APPROVE", "claim-1", "approve-claim-1",
            {"claim_item_ids": ["ci-1"]},
        )
        assert await queue.run_job(receipt.job_id) == "failed"

        command = await _load_command(session_factory, receipt.command_id)
        assert command.error["classification"] == "permanent"
        assert "Rejected" in command.error["message"]
        assert fake_client.calls_to("approve_claim_items") == []

    async def test_reject_requires_reason(self, service, connection):
        with pytest.raises(CommandValidationError):
            await service.submit(
                connection.id, "POST_CLAIM_REJECT", "claim-1", "reject-1", {"claim_item_ids": ["ci-1"]},
            )

    async def test_reject_creates_issue(self, service, queue, connection, fake_client, session_factory):
        _, item = await _seed_claim(session_factory, connection)
        receipt = await service.submit(
            connection.id, "POST_CLAIM_REJECT", "claim-1", "reject-1",
            {"claim_item_ids": ["ci-1"], "reason_id": 1651, "description": "Item used"},
        )
        await queue.run_job(receipt.job_id)

        call = fake_client.calls_to("create_claim_issue")[0]
        assert call["reason_id"] == "1651"
        async with session_factory() as db:
            assert (await db.get(ClaimItem, item.id)).item_status == "IssueCreated"


class TestTrackingCommand:
    async def test_tracking_number_projected_onto_order(self, service, queue, connection, session_factory):
        async with session_factory() as db:
            order = Order(
                connection_id=connection.id, marketplace="trendyol", remote_id="1001",
                order_number="1001", shipment_package_id="5001", status="Picking", raw={},
            )
            db.add(order)
            await db.commit()

        receipt = await service.submit(
            connection.id, "POST_UPDATE_TRACKING", "5001", "track-5001",
            {"tracking_number": "TRK123"},
        )
        await queue.run_job(receipt.job_id)

        async with session_factory() as db:
            assert (await db.get(Order, order.id)).cargo_tracking_number == "TRK123"
            entry = (await db.execute(select(AuditEntry))).scalar_one()
        assert entry.field == "cargo_tracking_number"
        assert entry.previous_value is None


class TestPushCommand:
    async def test_batch_request_id_in_summary(self, service, queue, connection, fake_client, session_factory):
        fake_client.script("update_price_and_inventory", ok({"batchRequestId": "batch-9"}))
        receipt = await service.submit(
            connection.id, "PUSH_PRICE_STOCK", None, "push-1",
            {"items": [{"barcode": "BC-1", "quantity": 3}]},
        )
        await queue.run_job(receipt.job_id)

        async with session_factory() as db:
            job = await db.get(Job, uuid.UUID(receipt.job_id))
        assert job.result_summary["batch_request_id"] == "batch-9"


# ---------------------------------------------------------------------------
# validate_request
# ---------------------------------------------------------------------------

class TestValidateRequest:
    def test_answer_normalized(self):
        assert validate_request("POST_ANSWER", "q-9", {"text": "  " + ANSWER_TEXT + " "}) == {
            "question_id": "q-9", "text": ANSWER_TEXT,
        }

    def test_answer_too_long(self):
        with pytest.raises(CommandValidationError):
            validate_request("POST_ANSWER", "q-9", {"text": "x" * 2001})

    def test_tracking_requires_number(self):
        with pytest.raises(CommandValidationError):
            validate_request("POST_UPDATE_TRACKING", "5001", {})

    def test_push_item_ceiling(self):
        items = [{"barcode": f"BC-{i}", "quantity": 1} for i in range(1001)]
        with pytest.raises(CommandValidationError):
            validate_request("PUSH_PRICE_STOCK", None, {"items": items})

    def test_claim_item_aliases(self):
        request = validate_request("POST_CLAIM_APPROVE", "c-1", {"claimLineItemIdList": [11, 12]})
        assert request["claim_item_ids"] == ["11", "12"]
