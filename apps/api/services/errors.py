"""Coded API error helpers."""

from typing import Optional

from fastapi import HTTPException

from config import settings


def api_error(status_code: int, code: str, message: str, exc: Optional[BaseException] = None) -> HTTPException:
    """Build an HTTPException whose detail carries a stable machine-readable code."""
    detail = {"message": message, "code": code}
    if exc is not None and settings.EXPOSE_ERROR_DETAILS:
        detail["error"] = str(exc)
    return HTTPException(status_code=status_code, detail=detail)
