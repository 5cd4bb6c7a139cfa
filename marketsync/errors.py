"""
Exception types shared across the job engine.
API routes translate these into HTTP responses; workers record them on
the Job/Command rows and keep running.
"""
from typing import Optional


class MarketsyncError(Exception):
    """Base class for all engine errors."""
    pass


class ConnectionBusyError(MarketsyncError):
    """Another job already holds the lock for this connection."""

    def __init__(self, connection_id: str, active_job_id: Optional[str] = None):
        self.connection_id = connection_id
        self.active_job_id = active_job_id
        super().__init__(f"Connection {connection_id[:8]} is locked by another job")


class LockBackendError(MarketsyncError):
    """The lock backend could not be reached. Never treated as a successful acquire."""
    pass


class CommandInFlightError(MarketsyncError):
    """A command with the same idempotency key is still queued or running."""

    def __init__(self, command_id: str, status: str):
        self.command_id = command_id
        self.status = status
        super().__init__(f"Command {command_id[:8]} is still {status}")


class InvalidTransitionError(MarketsyncError):
    """A status change that the entity's transition table does not allow."""

    def __init__(self, kind: str, current: str, target: str):
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(f"Illegal {kind} transition: {current} -> {target}")


class UnknownJobTypeError(MarketsyncError):
    pass


class ConnectionNotFoundError(MarketsyncError):
    pass


class MalformedRecordError(MarketsyncError):
    """A single remote record could not be normalized. Skipped, never fatal."""
    pass


class WebhookVerificationError(MarketsyncError):
    pass
