"""
SyncCursor model - last known sync progress per (connection, resource).
last_success_at only moves on a fully successful run, so a failed attempt
never hides how fresh the local data actually is.
"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from marketsync.database import Base


class SyncCursor(Base):
    __tablename__ = "sync_cursors"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    resource_type: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # orders, products, claims, questions, settlements

    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_status: Mapped[Optional[str]] = mapped_column(
        String(20)
    )  # running, success, partial, failed
    last_job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    last_summary: Mapped[Optional[dict]] = mapped_column(JSONB)

    __table_args__ = (
        UniqueConstraint("connection_id", "resource_type", name="uq_sync_cursors_connection_resource"),
    )

    def __repr__(self) -> str:
        return f"<SyncCursor {self.resource_type} ({self.last_status})>"
