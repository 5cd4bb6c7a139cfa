"""
Closed status vocabularies and their transition tables.

Columns store the enum's string value; every status change goes through
`transition()` so an illegal move fails loudly instead of being written.
"""
import enum

from marketsync.errors import InvalidTransitionError


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"  # sync stopped at a safety ceiling; not a failure
    FAILED = "failed"


class CommandStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class CursorStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ErrorClass(str, enum.Enum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"
    LOCAL = "local"


class WriteMode(str, enum.Enum):
    """Part of a command's identity: a dry-run never answers for a live write."""
    LIVE = "live"
    DRY_RUN = "dry_run"


class JobType(str, enum.Enum):
    SYNC_ORDERS = "SYNC_ORDERS"
    SYNC_PRODUCTS = "SYNC_PRODUCTS"
    SYNC_CLAIMS = "SYNC_CLAIMS"
    SYNC_QUESTIONS = "SYNC_QUESTIONS"
    SYNC_SETTLEMENTS = "SYNC_SETTLEMENTS"
    PUSH_PRICE_STOCK = "PUSH_PRICE_STOCK"
    POST_ANSWER = "POST_ANSWER"
    POST_CLAIM_APPROVE = "POST_CLAIM_APPROVE"
    POST_CLAIM_REJECT = "POST_CLAIM_REJECT"
    POST_UPDATE_TRACKING = "POST_UPDATE_TRACKING"

    @property
    def is_sync(self) -> bool:
        return self.value.startswith("SYNC_")

    @property
    def resource(self) -> str:
        """Resource name for SYNC_* types ("orders", "claims", ...)."""
        return self.value.split("_", 1)[1].lower()


class ClaimItemStatus(str, enum.Enum):
    CREATED = "Created"
    WAITING_IN_ACTION = "WaitingInAction"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    UNRESOLVED = "Unresolved"
    CANCELLED = "Cancelled"
    ISSUE_CREATED = "IssueCreated"
    WAITING_FRAUD_CHECK = "WaitingFraudCheck"


class QuestionStatus(str, enum.Enum):
    WAITING_FOR_ANSWER = "WAITING_FOR_ANSWER"
    WAITING_FOR_APPROVE = "WAITING_FOR_APPROVE"
    ANSWERED = "ANSWERED"
    REPORTED = "REPORTED"
    REJECTED = "REJECTED"


class VerifyStatus(str, enum.Enum):
    VERIFIED = "verified"
    FAILED = "failed"


class WebhookAuthType(str, enum.Enum):
    API_KEY = "API_KEY"
    BASIC_AUTHENTICATION = "BASIC_AUTHENTICATION"


JOB_TRANSITIONS: dict[JobStatus, frozenset] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCESS, JobStatus.PARTIAL, JobStatus.FAILED}),
    JobStatus.SUCCESS: frozenset(),
    JobStatus.PARTIAL: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# A failed command may be re-armed by a resubmission with the same key;
# whether that is allowed depends on its error classification, checked
# by the command service.
COMMAND_TRANSITIONS: dict[CommandStatus, frozenset] = {
    CommandStatus.QUEUED: frozenset({CommandStatus.RUNNING, CommandStatus.FAILED}),
    CommandStatus.RUNNING: frozenset({CommandStatus.SUCCESS, CommandStatus.FAILED}),
    CommandStatus.SUCCESS: frozenset(),
    CommandStatus.FAILED: frozenset({CommandStatus.QUEUED}),
}

TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.PARTIAL, JobStatus.FAILED})

# Local command writes only move a claim item out of an actionable state.
CLAIM_ITEM_COMMAND_TRANSITIONS: dict[ClaimItemStatus, frozenset] = {
    ClaimItemStatus.CREATED: frozenset({ClaimItemStatus.ACCEPTED, ClaimItemStatus.ISSUE_CREATED}),
    ClaimItemStatus.WAITING_IN_ACTION: frozenset({ClaimItemStatus.ACCEPTED, ClaimItemStatus.ISSUE_CREATED}),
}


def transition(kind: str, table: dict, current, target):
    """Return `target` if `current -> target` is in `table`, else raise."""
    current_member = type(target)(current) if not isinstance(current, type(target)) else current
    if target not in table.get(current_member, frozenset()):
        raise InvalidTransitionError(kind, current_member.value, target.value)
    return target


def job_transition(current, target: JobStatus) -> str:
    return transition("job", JOB_TRANSITIONS, current, target).value


def command_transition(current, target: CommandStatus) -> str:
    return transition("command", COMMAND_TRANSITIONS, current, target).value
