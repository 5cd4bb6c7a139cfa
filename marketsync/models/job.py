"""
Job model - one unit of sync, push or command work against a connection.
Status only moves forward (see models.enums.JOB_TRANSITIONS).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from marketsync.database import Base


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )

    job_type: Mapped[str] = mapped_column(
        String(40), nullable=False
    )  # SYNC_ORDERS, PUSH_PRICE_STOCK, POST_ANSWER, ...

    status: Mapped[str] = mapped_column(
        String(20), default="queued", nullable=False
    )  # queued, running, success, partial, failed

    request_payload: Mapped[Optional[dict]] = mapped_column(JSONB)
    result_summary: Mapped[Optional[dict]] = mapped_column(JSONB)
    error: Mapped[Optional[str]] = mapped_column(Text)

    # Token of the connection lock held on behalf of this job
    lock_token: Mapped[Optional[str]] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_jobs_connection_created", "connection_id", "created_at"),
        Index("ix_jobs_status_started", "status", "started_at"),
    )

    def __repr__(self) -> str:
        return f"<Job {self.job_type} ({self.status})>"
