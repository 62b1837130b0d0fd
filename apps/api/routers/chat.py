"""Chat router: conversations and paid message sends."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_account
from routers.rate_limit import rate_limit
from services.chat import (
    create_conversation,
    deactivate_conversation,
    list_conversations,
    list_messages,
    rename_conversation,
    send_message,
)

router = APIRouter()


class ConversationRequest(BaseModel):
    title: str = Field(default="", max_length=200)


class MessageRequest(BaseModel):
    content: str = Field(default="", max_length=4000)


@router.get("/conversations")
async def get_conversations(
    user: User = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return {"conversations": await list_conversations(db, user_id=user.id)}


@router.post("/conversations", status_code=201)
async def post_conversation(
    request: ConversationRequest,
    user: User = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    conversation = await create_conversation(db, user_id=user.id, title=request.title)
    return {"message": "Conversation created successfully", "conversation": conversation}


@router.put("/conversations/{conversation_id}")
async def put_conversation(
    conversation_id: str,
    request: ConversationRequest,
    user: User = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    conversation = await rename_conversation(
        db,
        user_id=user.id,
        conversation_id=conversation_id,
        title=request.title,
    )
    return {"message": "Conversation updated successfully", "conversation": conversation}


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    user: User = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    await deactivate_conversation(db, user_id=user.id, conversation_id=conversation_id)
    return {"message": "Conversation deleted successfully"}


@router.get("/conversations/{conversation_id}/messages")
async def get_messages(
    conversation_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await list_messages(
        db,
        user_id=user.id,
        conversation_id=conversation_id,
        page=page,
        limit=limit,
    )


@router.post("/conversations/{conversation_id}/messages")
async def post_message(
    conversation_id: str,
    request: MessageRequest,
    _rate_limit: None = Depends(rate_limit("chat_send", limit=120, window_seconds=60)),
    user: User = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Send a user message; costs one credit."""
    return await send_message(
        db,
        user_id=user.id,
        conversation_id=conversation_id,
        content=request.content,
    )
