"""
Authentication router for account registration, login, session refresh and profile retrieval.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_account
from routers.rate_limit import rate_limit
from services.accounts import (
    account_for_refresh_token,
    authenticate,
    register_account,
    serialize_account,
)
from services.session_token import create_refresh_token, create_session_token

router = APIRouter()


class RegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=30)
    email: str = Field(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=6, max_length=128)


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


def _token_payload(user: User) -> dict:
    session = create_session_token(user.id, user.email)
    return {
        "session_token": session["token"],
        "session_expires_at": session["expires_at"],
        "refresh_token": create_refresh_token(user.id)["token"],
    }


async def _session_payload(user: User, db: AsyncSession) -> dict:
    return {"user": await serialize_account(user, db), **_token_payload(user)}


@router.post("/register", status_code=201)
async def register(
    request: RegisterRequest,
    _rate_limit: None = Depends(rate_limit("auth_register", limit=20, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
):
    """Create an account with the starting credit grant."""
    user = await register_account(
        db,
        username=request.username,
        email=request.email,
        password=request.password,
    )
    return await _session_payload(user, db)


@router.post("/login")
async def login(
    request: LoginRequest,
    _rate_limit: None = Depends(rate_limit("auth_login", limit=30, window_seconds=900)),
    db: AsyncSession = Depends(get_db),
):
    user = await authenticate(db, email=request.email, password=request.password)
    return await _session_payload(user, db)


@router.get("/me")
async def get_me(
    user: User = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Get the current account with its live credit balance."""
    return {"user": await serialize_account(user, db)}


@router.post("/refresh")
async def refresh(
    request: RefreshRequest,
    _rate_limit: None = Depends(rate_limit("auth_refresh", limit=60, window_seconds=900)),
    db: AsyncSession = Depends(get_db),
):
    """Exchange a refresh token for a new session and refresh token."""
    user = await account_for_refresh_token(db, request.refresh_token)
    return {"message": "Token refreshed successfully", **_token_payload(user)}
