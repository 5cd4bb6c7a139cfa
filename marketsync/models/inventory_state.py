"""
InventoryConfirmedState - last price/stock the marketplace confirmed per barcode.
Pushes diff against it so unchanged items are never resent.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Float, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from marketsync.database import Base


class InventoryConfirmedState(Base):
    __tablename__ = "inventory_confirmed_state"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    barcode: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[Optional[int]] = mapped_column(Integer)
    sale_price: Mapped[Optional[float]] = mapped_column(Float)
    list_price: Mapped[Optional[float]] = mapped_column(Float)
    batch_request_id: Mapped[Optional[str]] = mapped_column(String(100))
    confirmed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("connection_id", "barcode", name="uq_inventory_confirmed_connection_barcode"),
    )

    def __repr__(self) -> str:
        return f"<InventoryConfirmedState {self.barcode} qty={self.quantity}>"
