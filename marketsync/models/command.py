"""
Command model - one write action relayed to the marketplace.
(connection_id, idempotency_key, write_mode) is unique: resubmitting the same
key returns this row instead of repeating the remote side effect. Dry-run
commands live in their own key space so enabling writes sends them for real.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from marketsync.database import Base


class Command(Base):
    __tablename__ = "commands"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    command_type: Mapped[str] = mapped_column(
        String(40), nullable=False
    )  # POST_ANSWER, POST_CLAIM_APPROVE, POST_CLAIM_REJECT, POST_UPDATE_TRACKING, PUSH_PRICE_STOCK
    target_id: Mapped[Optional[str]] = mapped_column(String(100))
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)
    write_mode: Mapped[str] = mapped_column(
        String(10), default="live", nullable=False
    )  # live, dry_run

    status: Mapped[str] = mapped_column(
        String(20), default="queued", nullable=False
    )  # queued, running, success, failed
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    request: Mapped[dict] = mapped_column(JSONB, nullable=False)
    response: Mapped[Optional[dict]] = mapped_column(JSONB)
    # {"classification": "retryable|permanent|local", "status_code": int|None, "body": ..., "message": str}
    error: Mapped[Optional[dict]] = mapped_column(JSONB)

    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    executor_user: Mapped[Optional[str]] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("connection_id", "idempotency_key", "write_mode", name="uq_commands_idempotency"),
        Index("ix_commands_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Command {self.command_type} ({self.status})>"
