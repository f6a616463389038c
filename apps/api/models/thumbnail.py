"""Generated thumbnail record."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Thumbnail(Base):
    """Thumbnail generation request and its outcome."""

    __tablename__ = "thumbnails"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_thumbnails_user_key"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    idempotency_key = Column(String, nullable=False)
    video_title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    style = Column(String, ForeignKey("templates.id"), nullable=False)
    source_image_url = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    stage = Column(String, nullable=False, default="pending")
    reservation_id = Column(String, ForeignKey("credit_reservations.id"), nullable=True, index=True)
    credit_cost = Column(Integer, nullable=False, default=0)
    recognition_json = Column(JSON, nullable=True)
    storage_key = Column(String, nullable=True, index=True)
    content_type = Column(String, nullable=True)
    size_bytes = Column(Integer, nullable=True)
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="thumbnails")
    template = relationship("Template")
