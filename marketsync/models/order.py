"""
Order model - one shipment package of a marketplace order.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import String, DateTime, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column
from marketsync.database import Base
from marketsync.models.entity import MarketplaceEntityMixin


class Order(MarketplaceEntityMixin, Base):
    __tablename__ = "orders"

    order_number: Mapped[Optional[str]] = mapped_column(String(50))
    shipment_package_id: Mapped[Optional[str]] = mapped_column(String(50))
    status: Mapped[Optional[str]] = mapped_column(String(40))
    cargo_tracking_number: Mapped[Optional[str]] = mapped_column(String(100))
    order_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_modified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("connection_id", "marketplace", "remote_id", name="uq_orders_natural_key"),
        Index("ix_orders_shipment_package_id", "shipment_package_id"),
    )

    def __repr__(self) -> str:
        return f"<Order {self.order_number} ({self.status})>"
