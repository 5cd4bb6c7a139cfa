"""
Customer question and seller answer models.
"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from marketsync.database import Base
from marketsync.models.entity import MarketplaceEntityMixin


class Question(MarketplaceEntityMixin, Base):
    __tablename__ = "questions"

    status: Mapped[Optional[str]] = mapped_column(
        String(40)
    )  # WAITING_FOR_ANSWER, WAITING_FOR_APPROVE, ANSWERED, REPORTED, REJECTED
    text: Mapped[Optional[str]] = mapped_column(Text)
    asked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    product_name: Mapped[Optional[str]] = mapped_column(String(500))
    product_main_id: Mapped[Optional[str]] = mapped_column(String(100))
    customer_id: Mapped[Optional[str]] = mapped_column(String(50))

    __table_args__ = (
        UniqueConstraint("connection_id", "marketplace", "remote_id", name="uq_questions_natural_key"),
    )

    def __repr__(self) -> str:
        return f"<Question {self.remote_id} ({self.status})>"


class Answer(MarketplaceEntityMixin, Base):
    __tablename__ = "answers"

    question_db_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    text: Mapped[Optional[str]] = mapped_column(Text)
    answered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("connection_id", "marketplace", "remote_id", name="uq_answers_natural_key"),
    )

    def __repr__(self) -> str:
        return f"<Answer {self.remote_id}>"
