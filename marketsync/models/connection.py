"""
Connection model - one configured link to a marketplace seller account.
Credentials live in `config_encrypted` (Fernet token of a JSON object) and
are only decrypted when a client is built for a job.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from marketsync.database import Base


class Connection(Base):
    __tablename__ = "connections"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    marketplace: Mapped[str] = mapped_column(
        String(30), nullable=False, default="trendyol"
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active"
    )  # active, disabled

    base_url: Mapped[str] = mapped_column(String(255), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(50), nullable=False)
    integration_name: Mapped[Optional[str]] = mapped_column(String(100))

    # {"api_key": ..., "api_secret": ...}
    config_encrypted: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<Connection {self.name} ({self.marketplace}/{self.status})>"
