"""Core module for configuration and infrastructure."""

from payments_core.core.config import settings
from payments_core.core.database import Base, get_session

__all__ = [
    "settings",
    "Base",
    "get_session",
]
