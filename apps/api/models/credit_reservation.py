"""Provisional credit debit tied to one generation request."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


class CreditReservation(Base):
    """Reserved credits awaiting commit or refund."""

    __tablename__ = "credit_reservations"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_credit_reservations_user_key"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    idempotency_key = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="reserved", index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="credit_reservations")
    transactions = relationship("CreditTransaction", back_populates="reservation")
