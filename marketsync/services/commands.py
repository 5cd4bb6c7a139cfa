"""
Command submission - idempotent admission of marketplace writes.

Lookup order for (connection_id, idempotency_key, write_mode), where the
write mode is dry_run while MARKETPLACE_WRITE_ENABLED is off:
- success, or failed permanently   -> stored result returned, nothing re-sent
- queued or running                -> CommandInFlightError
- failed retryable / local         -> the same row is re-armed with a new job
- absent                           -> new Command row + job
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from marketsync.errors import CommandInFlightError, UnknownJobTypeError
from marketsync.models.command import Command
from marketsync.models.enums import CommandStatus, ErrorClass, JobType, WriteMode, command_transition
from marketsync.services.command_handler import CommandValidationError, validate_request
from marketsync.services.connections import as_uuid
from marketsync.services.job_queue import JobQueue

logger = logging.getLogger(__name__)

COMMAND_TYPES = frozenset({
    JobType.POST_ANSWER.value,
    JobType.POST_CLAIM_APPROVE.value,
    JobType.POST_CLAIM_REJECT.value,
    JobType.POST_UPDATE_TRACKING.value,
    JobType.PUSH_PRICE_STOCK.value,
})


@dataclass
class CommandReceipt:
    command_id: str
    status: str
    job_id: Optional[str] = None
    replayed: bool = False
    response: Optional[dict] = None
    error: Optional[dict] = None

    def as_dict(self) -> dict:
        return {
            "commandId": self.command_id,
            "status": self.status,
            "jobId": self.job_id,
            "replayed": self.replayed,
            "response": self.response,
            "error": self.error,
        }


def _receipt(command: Command, replayed: bool) -> CommandReceipt:
    return CommandReceipt(
        command_id=str(command.id),
        status=command.status,
        job_id=str(command.job_id) if command.job_id else None,
        replayed=replayed,
        response=command.response,
        error=command.error,
    )


def is_rearmable(command: Command) -> bool:
    """A failed command whose remote effect is known not to have landed may run again."""
    if command.status != CommandStatus.FAILED.value:
        return False
    classification = (command.error or {}).get("classification")
    return classification in (ErrorClass.RETRYABLE.value, ErrorClass.LOCAL.value)


class CommandService:
    def __init__(self, job_queue: JobQueue, session_factory=None):
        self.job_queue = job_queue
        self.session_factory = session_factory or job_queue.session_factory

    def write_mode(self) -> str:
        """Mode new submissions are admitted under, from MARKETPLACE_WRITE_ENABLED."""
        if self.job_queue.settings.marketplace_write_enabled:
            return WriteMode.LIVE.value
        return WriteMode.DRY_RUN.value

    async def find(self, connection_id, idempotency_key: str, write_mode: str = WriteMode.LIVE.value) -> Optional[Command]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Command).where(
                    Command.connection_id == as_uuid(connection_id),
                    Command.idempotency_key == idempotency_key,
                    Command.write_mode == write_mode,
                )
            )
            return result.scalar_one_or_none()

    def _resolve_existing(self, existing: Command) -> Optional[CommandReceipt]:
        """Receipt for a stored command that must not run again, or None if re-armable."""
        if existing.status in (CommandStatus.QUEUED.value, CommandStatus.RUNNING.value):
            raise CommandInFlightError(str(existing.id), existing.status)
        if is_rearmable(existing):
            return None
        logger.info(
            "Command replayed: id=%s key=%s status=%s",
            str(existing.id)[:8], existing.idempotency_key[:24], existing.status,
        )
        return _receipt(existing, replayed=True)

    async def submit(
        self,
        connection_id,
        command_type: str,
        target_id: Optional[str],
        idempotency_key: str,
        payload: Optional[dict] = None,
        executor_user: Optional[str] = None,
    ) -> CommandReceipt:
        """
        Admit a command. Raises ConnectionBusyError when the connection is
        locked, CommandInFlightError for an unfinished duplicate, and
        CommandValidationError for an unusable request.
        """
        if command_type not in COMMAND_TYPES:
            raise UnknownJobTypeError(f"Unknown command type: {command_type}")
        if not idempotency_key or not idempotency_key.strip():
            raise CommandValidationError("idempotency_key is required")
        idempotency_key = idempotency_key.strip()
        write_mode = self.write_mode()

        existing = await self.find(connection_id, idempotency_key, write_mode)
        if existing is not None:
            receipt = self._resolve_existing(existing)
            if receipt is not None:
                return receipt
            request = existing.request
        else:
            request = validate_request(command_type, target_id, payload)

        job = await self.job_queue.reserve(
            connection_id, command_type, {"idempotency_key": idempotency_key, "write_mode": write_mode},
        )

        try:
            command = await self._attach(job, existing, connection_id, command_type, target_id,
                                         idempotency_key, write_mode, request, executor_user)
        except IntegrityError:
            # Another submission with the same key won the insert
            await self.job_queue.abandon(job.id, "duplicate idempotency key")
            winner = await self.find(connection_id, idempotency_key, write_mode)
            receipt = self._resolve_existing(winner)
            if receipt is None:
                raise CommandInFlightError(str(winner.id), winner.status)
            return receipt
        except Exception:
            await self.job_queue.abandon(job.id, "command admission failed")
            raise

        self.job_queue.dispatch(job.id)
        logger.info(
            "Command queued: id=%s type=%s job=%s rearmed=%s",
            str(command.id)[:8], command_type, str(job.id)[:8], existing is not None,
            extra={"command_id": str(command.id), "job_id": str(job.id)},
        )
        return _receipt(command, replayed=False)

    async def _attach(self, job, existing, connection_id, command_type, target_id,
                      idempotency_key, write_mode, request, executor_user) -> Command:
        async with self.session_factory() as db:
            if existing is not None:
                command = await db.get(Command, existing.id)
                if not is_rearmable(command):
                    raise CommandInFlightError(str(command.id), command.status)
                command.status = command_transition(command.status, CommandStatus.QUEUED)
                command.error = None
                command.job_id = job.id
                if executor_user:
                    command.executor_user = executor_user
            else:
                command = Command(
                    connection_id=as_uuid(connection_id),
                    command_type=command_type,
                    target_id=str(target_id) if target_id else None,
                    idempotency_key=idempotency_key,
                    write_mode=write_mode,
                    status=CommandStatus.QUEUED.value,
                    job_id=job.id,
                    request=request,
                    executor_user=executor_user,
                )
                db.add(command)
            await db.commit()
            return command
