"""
Shared columns for records mirrored from the marketplace.

Every mirrored record is unique on (connection_id, marketplace, remote_id),
keeps the untransformed remote payload in `raw`, and is only written by
sync upserts or by a successful local command.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import String, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, declared_attr


class MarketplaceEntityMixin:
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    @declared_attr
    def connection_id(cls) -> Mapped[uuid.UUID]:
        return mapped_column(
            UUID(as_uuid=True),
            ForeignKey("connections.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )

    marketplace: Mapped[str] = mapped_column(String(30), nullable=False, default="trendyol")
    remote_id: Mapped[str] = mapped_column(String(100), nullable=False)
    raw: Mapped[dict] = mapped_column(JSONB, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
