"""Transaction model for settled credit purchases."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Numeric
from sqlalchemy.sql import func
import uuid

from database import Base


class Transaction(Base):
    """Immutable record of one confirmed payment session."""

    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    stripe_id = Column(String, unique=True, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    plan = Column(String, nullable=True)
    credits = Column(Integer, nullable=False)
    buyer_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
