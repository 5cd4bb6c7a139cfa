"""
AuditEntry model - append-only record of an observed or caused transition.
executor_app tells local command writes ("marketsync") apart from
transitions observed while syncing ("remote-sync").
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from marketsync.database import Base

EXECUTOR_LOCAL = "marketsync"
EXECUTOR_REMOTE_SYNC = "remote-sync"


class AuditEntry(Base):
    __tablename__ = "audit_entries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    marketplace: Mapped[str] = mapped_column(String(30), nullable=False, default="trendyol")

    entity_type: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # order, claim, claim_item, question, product
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    field: Mapped[str] = mapped_column(String(50), nullable=False, default="status")
    previous_value: Mapped[Optional[str]] = mapped_column(String(255))
    new_value: Mapped[Optional[str]] = mapped_column(String(255))

    executor_app: Mapped[str] = mapped_column(String(50), nullable=False)
    executor_user: Mapped[Optional[str]] = mapped_column(String(100))
    command_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    evidence: Mapped[Optional[dict]] = mapped_column(JSONB)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_audit_entries_entity", "entity_type", "entity_id"),
        Index("ix_audit_entries_connection", "connection_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditEntry {self.entity_type} {self.previous_value}->{self.new_value}>"
