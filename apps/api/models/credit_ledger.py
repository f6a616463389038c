"""CreditTransaction model for the append-only credit ledger."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class CreditTransaction(Base):
    """Immutable credit ledger entry keyed by its idempotency key."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    reason = Column(String, nullable=False)
    delta_credits = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reservation_id = Column(String, ForeignKey("credit_reservations.id"), nullable=True, index=True)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    period_key = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)

    user = relationship("User", back_populates="credit_transactions")
    reservation = relationship("CreditReservation", back_populates="transactions")
