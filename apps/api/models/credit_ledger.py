"""CreditLedger model for credit accounting."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


LEDGER_REASON_GRANT = "grant"
LEDGER_REASON_PURCHASE = "purchase"
LEDGER_REASON_MESSAGE = "message"
LEDGER_REASON_ROLLBACK = "rollback"

REF_TYPE_ACCOUNT = "account"
REF_TYPE_TRANSACTION = "transaction"
REF_TYPE_MESSAGE = "message"
REF_TYPE_MESSAGE_ROLLBACK = "message_rollback"


class CreditLedger(Base):
    """Immutable credit ledger entry, unique per causing reference."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        UniqueConstraint("ref_type", "ref_id", name="uq_credit_ledger_ref"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    ref_type = Column(String, nullable=False)
    ref_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_entries")
