"""Account registration, password login and session refresh."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import uuid

from passlib.context import CryptContext
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import User
from services.credits import get_account_totals, grant_signup_credits
from services.errors import api_error
from services.session_token import REFRESH_TOKEN_TYPE, decode_session_token

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def password_verified(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


async def serialize_account(user: User, db: AsyncSession) -> Dict[str, Any]:
    credits, total_purchased = await get_account_totals(user.id, db) or (0, 0)
    return {
        "user_id": user.id,
        "username": user.username,
        "email": user.email,
        "credits": credits,
        "total_purchased": total_purchased,
        "billing_customer": bool(user.stripe_customer_id),
        "is_active": bool(user.is_active),
    }


async def register_account(db: AsyncSession, *, username: str, email: str, password: str) -> User:
    username = username.strip()
    email = email.strip().lower()
    existing = await db.execute(
        select(User.id).where(or_(User.username == username, User.email == email))
    )
    if existing.first() is not None:
        raise api_error(409, "ACCOUNT_EXISTS", "An account with that username or email already exists")

    user = User(
        id=str(uuid.uuid4()),
        username=username,
        email=email,
        password_hash=get_password_hash(password),
        credits=0,
        total_purchased=0,
        is_active=True,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise api_error(409, "ACCOUNT_EXISTS", "An account with that username or email already exists") from exc

    await grant_signup_credits(user.id, db, credits=settings.SIGNUP_CREDIT_GRANT)
    logger.info("Registered account %s with %s starting credits", user.id, settings.SIGNUP_CREDIT_GRANT)
    return user


async def authenticate(db: AsyncSession, *, email: str, password: str) -> User:
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    user = result.scalar_one_or_none()
    if not user or not password_verified(password, user.password_hash):
        raise api_error(401, "INVALID_CREDENTIALS", "Invalid email or password")
    if not user.is_active:
        raise api_error(403, "ACCOUNT_INACTIVE", "Account is deactivated")
    user.last_login_at = datetime.now(timezone.utc)
    await db.commit()
    return user


async def account_for_refresh_token(db: AsyncSession, refresh_token: Optional[str]) -> User:
    """Resolve the active account behind a refresh token."""
    if not refresh_token:
        raise api_error(401, "NO_REFRESH_TOKEN", "Refresh token required")
    try:
        payload = decode_session_token(refresh_token, token_type=REFRESH_TOKEN_TYPE)
    except ValueError as exc:
        raise api_error(401, "INVALID_REFRESH_TOKEN", "Invalid refresh token") from exc

    result = await db.execute(select(User).where(User.id == str(payload["sub"])))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise api_error(401, "INVALID_USER", "Invalid user")
    return user
