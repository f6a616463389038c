"""Generation style template model."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String

from database import Base


class Template(Base):
    """Published style parameters; never updated in place."""

    __tablename__ = "templates"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    style_params = Column(JSON, nullable=False, default=dict)
    credit_cost = Column(Integer, nullable=False, default=1)
    revision = Column(Integer, nullable=False, default=1)
    parent_template_id = Column(String, ForeignKey("templates.id"), nullable=True)
    owner_user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
