"""Transaction model for credit purchase attempts."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


TRANSACTION_CREATED = "created"
TRANSACTION_PAID = "paid"
TRANSACTION_FAILED = "failed"
TRANSACTION_EXPIRED = "expired"

TRANSACTION_STATUSES = (
    TRANSACTION_CREATED,
    TRANSACTION_PAID,
    TRANSACTION_FAILED,
    TRANSACTION_EXPIRED,
)


class Transaction(Base):
    """One checkout attempt, correlated with a provider checkout session."""

    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    credits = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="usd")
    provider = Column(String, nullable=False, default="stripe")
    session_id = Column(String, nullable=True, unique=True)
    payment_intent_id = Column(String, nullable=True, unique=True)
    status = Column(String, nullable=False, default=TRANSACTION_CREATED, index=True)
    pending = Column(Boolean, nullable=False, default=True)
    raw_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="transactions")
