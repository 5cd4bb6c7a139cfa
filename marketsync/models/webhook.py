"""
Webhook subscription and event models.

WebhookSubscription holds the per-connection credentials a provider must
present (hashed, never plaintext). WebhookEvent is unique on event_key so
redelivered events collapse into one row.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from marketsync.database import Base


class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(30), nullable=False, default="trendyol")
    authentication_type: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # API_KEY, BASIC_AUTHENTICATION
    api_key_hash: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    basic_username: Mapped[Optional[str]] = mapped_column(String(100))
    basic_password_hash: Mapped[Optional[str]] = mapped_column(String(64))
    event_resource: Mapped[str] = mapped_column(
        String(30), nullable=False, default="orders"
    )  # resource re-synced when an event arrives
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("connection_id", "provider", name="uq_webhook_subscriptions_connection_provider"),
    )


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_key = Column(String(100), nullable=False, unique=True)
    body_hash = Column(String(64), nullable=False, index=True)
    provider = Column(String(30), nullable=False, index=True)
    event_type = Column(String(100), nullable=True)
    remote_object_id = Column(String(100), nullable=True)
    connection_id = Column(
        UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=True, index=True
    )
    verify_status = Column(String(20), nullable=False)  # verified, failed
    dedup_hit = Column(Boolean, nullable=False, default=False)
    dedup_count = Column(Integer, nullable=False, default=0)
    downstream_status = Column(String(30), nullable=True)  # enqueued, deferred_locked, skipped
    downstream_job_id = Column(UUID(as_uuid=True), nullable=True)
    raw_body = Column(JSONB, nullable=True)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
