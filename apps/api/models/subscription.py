"""Subscription plan model driving periodic credit grants."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Subscription(Base):
    """User plan with renewal schedule."""

    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    plan = Column(String, nullable=False, default="free")
    periodic_credit_grant = Column(Integer, nullable=False, default=0)
    credit_ceiling = Column(Integer, nullable=True)
    period_index = Column(Integer, nullable=False, default=0)
    # Credits already granted for the open period, across plan changes.
    period_entitlement = Column(Integer, nullable=False, default=0)
    renewal_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String, nullable=False, default="active", index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=_utcnow)

    user = relationship("User", back_populates="subscription")
