"""Conversation and message persistence, including paid message sends."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List
import uuid

from fastapi import HTTPException
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.conversation import Conversation
from models.message import Message
from services.assistant import generate_reply
from services.credits import charge_message_credit, get_credit_balance
from services.errors import api_error

logger = logging.getLogger(__name__)


def serialize_conversation(conversation: Conversation) -> Dict[str, Any]:
    return {
        "id": conversation.id,
        "title": conversation.title,
        "message_count": int(conversation.message_count or 0),
        "total_tokens": int(conversation.total_tokens or 0),
        "last_message_at": conversation.last_message_at.isoformat() if conversation.last_message_at else None,
        "created_at": conversation.created_at.isoformat() if conversation.created_at else None,
    }


def serialize_message(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "role": message.role,
        "content": message.content,
        "tokens": message.tokens,
        "model": message.model,
        "processing_time_ms": message.processing_time_ms,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


def _clean_title(title: str) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise api_error(400, "INVALID_TITLE", "Title is required")
    return cleaned[:200]


async def get_active_conversation(db: AsyncSession, *, user_id: str, conversation_id: str) -> Conversation:
    result = await db.execute(
        select(Conversation).where(
            Conversation.id == conversation_id,
            Conversation.user_id == user_id,
            Conversation.is_active.is_(True),
        )
    )
    conversation = result.scalar_one_or_none()
    if not conversation:
        raise api_error(404, "CONVERSATION_NOT_FOUND", "Conversation not found")
    return conversation


async def list_conversations(db: AsyncSession, *, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(Conversation)
        .where(Conversation.user_id == user_id, Conversation.is_active.is_(True))
        .order_by(Conversation.updated_at.desc())
        .limit(limit)
    )
    return [serialize_conversation(item) for item in result.scalars().all()]


async def create_conversation(db: AsyncSession, *, user_id: str, title: str) -> Dict[str, Any]:
    conversation = Conversation(
        id=str(uuid.uuid4()),
        user_id=user_id,
        title=_clean_title(title),
        message_count=0,
        total_tokens=0,
    )
    db.add(conversation)
    await db.commit()
    await db.refresh(conversation)
    return serialize_conversation(conversation)


async def rename_conversation(db: AsyncSession, *, user_id: str, conversation_id: str, title: str) -> Dict[str, Any]:
    cleaned = _clean_title(title)
    conversation = await get_active_conversation(db, user_id=user_id, conversation_id=conversation_id)
    conversation.title = cleaned
    await db.commit()
    await db.refresh(conversation)
    return serialize_conversation(conversation)


async def deactivate_conversation(db: AsyncSession, *, user_id: str, conversation_id: str) -> None:
    conversation = await get_active_conversation(db, user_id=user_id, conversation_id=conversation_id)
    conversation.is_active = False
    await db.commit()


async def list_messages(
    db: AsyncSession,
    *,
    user_id: str,
    conversation_id: str,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    await get_active_conversation(db, user_id=user_id, conversation_id=conversation_id)
    page = max(int(page), 1)
    limit = max(1, min(int(limit), 200))
    total_result = await db.execute(
        select(func.count(Message.id)).where(Message.conversation_id == conversation_id)
    )
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "messages": [serialize_message(item) for item in result.scalars().all()],
        "pagination": {"page": page, "limit": limit, "total": int(total_result.scalar() or 0)},
    }


async def _append_message(
    db: AsyncSession,
    *,
    conversation_id: str,
    message: Message,
    tokens: int = 0,
) -> Message:
    db.add(message)
    await db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(
            message_count=Conversation.message_count + 1,
            total_tokens=Conversation.total_tokens + int(tokens),
            last_message_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return message


async def _persist_user_message(
    db: AsyncSession,
    *,
    conversation_id: str,
    message_id: str,
    user_id: str,
    content: str,
) -> Message:
    return await _append_message(
        db,
        conversation_id=conversation_id,
        message=Message(
            id=message_id,
            conversation_id=conversation_id,
            user_id=user_id,
            role="user",
            content=content,
        ),
    )


async def send_message(
    db: AsyncSession,
    *,
    user_id: str,
    conversation_id: str,
    content: str,
) -> Dict[str, Any]:
    """Spend one credit, record the user message, then append the assistant reply."""
    text = (content or "").strip()
    if not text:
        raise api_error(400, "INVALID_MESSAGE", "Message content is required")

    cost = max(int(settings.MESSAGE_CREDIT_COST), 1)
    if await get_credit_balance(user_id, db) < cost:
        raise api_error(402, "INSUFFICIENT_CREDITS", "Insufficient credits")

    conversation = await get_active_conversation(db, user_id=user_id, conversation_id=conversation_id)
    model = conversation.model
    temperature = conversation.temperature
    message_id = str(uuid.uuid4())

    async def _save() -> Message:
        return await _persist_user_message(
            db,
            conversation_id=conversation_id,
            message_id=message_id,
            user_id=user_id,
            content=text,
        )

    try:
        user_message = await charge_message_credit(
            db,
            user_id=user_id,
            message_id=message_id,
            action=_save,
            cost=cost,
        )
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Saving message %s failed; debit compensated", message_id)
        raise api_error(500, "SEND_MESSAGE_ERROR", "Failed to send message", exc) from exc

    user_payload = serialize_message(user_message)

    try:
        reply = await generate_reply(text, model=model, temperature=temperature)
        ai_message = await _append_message(
            db,
            conversation_id=conversation_id,
            message=Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                user_id=user_id,
                role="assistant",
                content=reply.content,
                tokens=reply.tokens,
                model=reply.model,
                processing_time_ms=reply.processing_time_ms,
            ),
            tokens=reply.tokens,
        )
    except Exception as exc:
        # The user message is recorded and billed; only the reply is lost.
        logger.exception("Assistant reply failed for message %s", message_id)
        await db.rollback()
        raise api_error(500, "SEND_MESSAGE_ERROR", "Failed to send message", exc) from exc

    return {
        "message": "Message sent successfully",
        "user_message": user_payload,
        "ai_message": serialize_message(ai_message),
        "credits": await get_credit_balance(user_id, db),
    }
