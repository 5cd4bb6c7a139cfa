"""
Settlement model - one finance transaction line (sale, return, commission...).
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Float, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from marketsync.database import Base
from marketsync.models.entity import MarketplaceEntityMixin


class Settlement(MarketplaceEntityMixin, Base):
    __tablename__ = "settlements"

    transaction_type: Mapped[Optional[str]] = mapped_column(String(50))
    amount: Mapped[Optional[float]] = mapped_column(Float)
    transaction_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    order_number: Mapped[Optional[str]] = mapped_column(String(50))

    __table_args__ = (
        UniqueConstraint("connection_id", "marketplace", "remote_id", name="uq_settlements_natural_key"),
    )

    def __repr__(self) -> str:
        return f"<Settlement {self.transaction_type} {self.amount}>"
