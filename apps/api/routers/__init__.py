"""Routers package."""

from . import (
    health,
    auth,
    payments,
    billing,
    chat,
)
