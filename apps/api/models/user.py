"""User model."""

from sqlalchemy import CheckConstraint, Column, String, DateTime, Integer
from sqlalchemy.sql import func
import uuid

from config import settings
from database import Base


class User(Base):
    """Account mapped 1:1 to an identity-provider user."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_users_credit_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    external_id = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    username = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    photo = Column(String, nullable=True)
    # Only mutated through services.ledger.
    credit_balance = Column(
        Integer,
        nullable=False,
        default=lambda: max(int(settings.NEW_USER_CREDITS), 0),
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
