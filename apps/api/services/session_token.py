"""Session token helpers for backend-authenticated accounts."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "chat_session"
REFRESH_TOKEN_TYPE = "chat_refresh"


def _signed_token(user_id: str, token_type: str, ttl_hours: int, email: Optional[str] = None) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=ttl_hours)
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": token_type,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": int(expires_at.timestamp()),
    }


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a signed session token for an account."""
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    return _signed_token(user_id, SESSION_TOKEN_TYPE, ttl_hours, email)


def create_refresh_token(user_id: str) -> Dict[str, Any]:
    """Create a long-lived token that can only be exchanged for a new session."""
    ttl_hours = max(int(settings.JWT_REFRESH_EXPIRATION_HOURS or 168), 1)
    return _signed_token(user_id, REFRESH_TOKEN_TYPE, ttl_hours)


def decode_session_token(token: str, token_type: str = SESSION_TOKEN_TYPE) -> Dict[str, Any]:
    """Decode and validate a signed token of the expected type."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != token_type:
        raise ValueError("Invalid session token type.")
    if not str(payload.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")
    return payload
