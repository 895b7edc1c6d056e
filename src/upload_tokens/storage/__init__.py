"""Token and image cache storage implementations."""

from .base import TokenStore
from .sqlite import SQLiteTokenStore

__all__ = ["TokenStore", "SQLiteTokenStore"]
