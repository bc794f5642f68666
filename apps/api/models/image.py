"""Image model for saved transformation results."""

from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, JSON
from sqlalchemy.orm import relationship
import uuid

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Image(Base):
    """Transformation artifact authored by a user."""

    __tablename__ = "images"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=False)
    transformation_type = Column(String, nullable=False, index=True)
    public_id = Column(String, nullable=False, index=True)
    secure_url = Column(String, nullable=False)
    transformation_url = Column(String, nullable=True)
    derived_public_id = Column(String, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    config = Column(JSON, nullable=True)
    aspect_ratio = Column(String, nullable=True)
    color = Column(String, nullable=True)
    prompt = Column(String, nullable=True)
    author_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    # Python-side clock so listings can order by sub-second update times.
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, index=True)

    author = relationship("User", lazy="joined")
