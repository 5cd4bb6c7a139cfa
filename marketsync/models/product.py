"""
Product model - one catalog listing, keyed by barcode.
"""
from typing import Optional
from sqlalchemy import String, Integer, Float, Boolean, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from marketsync.database import Base
from marketsync.models.entity import MarketplaceEntityMixin


class Product(MarketplaceEntityMixin, Base):
    __tablename__ = "products"

    barcode: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    title: Mapped[Optional[str]] = mapped_column(String(500))
    stock_code: Mapped[Optional[str]] = mapped_column(String(100))
    quantity: Mapped[Optional[int]] = mapped_column(Integer)
    sale_price: Mapped[Optional[float]] = mapped_column(Float)
    list_price: Mapped[Optional[float]] = mapped_column(Float)
    approved: Mapped[Optional[bool]] = mapped_column(Boolean)

    __table_args__ = (
        UniqueConstraint("connection_id", "marketplace", "remote_id", name="uq_products_natural_key"),
    )

    def __repr__(self) -> str:
        return f"<Product {self.barcode}>"
