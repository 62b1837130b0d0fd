"""Message model."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(Base):
    """Single role-tagged message within a conversation."""

    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    tokens = Column(Integer, nullable=True)
    model = Column(String, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    # Client-side timestamp keeps sub-second ordering between a user message and its reply.
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)

    conversation = relationship("Conversation", back_populates="messages")
