"""
Claim (return request) and ClaimItem models.
Claim items carry the actionable status; approve/reject commands target them.
"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from marketsync.database import Base
from marketsync.models.entity import MarketplaceEntityMixin


class Claim(MarketplaceEntityMixin, Base):
    __tablename__ = "claims"

    order_number: Mapped[Optional[str]] = mapped_column(String(50))
    status: Mapped[Optional[str]] = mapped_column(String(40))
    claim_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_modified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    items: Mapped[list["ClaimItem"]] = relationship(
        back_populates="claim", cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (
        UniqueConstraint("connection_id", "marketplace", "remote_id", name="uq_claims_natural_key"),
    )

    def __repr__(self) -> str:
        return f"<Claim {self.remote_id} ({self.status})>"


class ClaimItem(MarketplaceEntityMixin, Base):
    __tablename__ = "claim_items"

    claim_db_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("claims.id", ondelete="CASCADE"), nullable=False, index=True
    )
    claim_remote_id: Mapped[str] = mapped_column(String(100), nullable=False)
    barcode: Mapped[Optional[str]] = mapped_column(String(100))
    quantity: Mapped[Optional[int]] = mapped_column(Integer)
    item_status: Mapped[Optional[str]] = mapped_column(
        String(40)
    )  # Created, WaitingInAction, Accepted, IssueCreated, ...
    reason_code: Mapped[Optional[str]] = mapped_column(String(50))
    reason_name: Mapped[Optional[str]] = mapped_column(String(255))

    claim: Mapped["Claim"] = relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("connection_id", "marketplace", "remote_id", name="uq_claim_items_natural_key"),
    )

    def __repr__(self) -> str:
        return f"<ClaimItem {self.remote_id} ({self.item_status})>"
