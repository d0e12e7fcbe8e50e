"""Core module for configuration, persistence and observability."""

from convertviral.core.config import Settings, settings
from convertviral.core.database import Base, get_session
from convertviral.core.redis import get_redis

__all__ = [
    "Settings",
    "settings",
    "Base",
    "get_session",
    "get_redis",
]
