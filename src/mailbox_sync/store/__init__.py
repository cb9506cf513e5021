"""Token and cursor persistence."""

from .base import CursorStore, TokenStore
from .memory import InMemoryMailboxStore
from .sqlite import SQLiteMailboxStore

__all__ = ["CursorStore", "InMemoryMailboxStore", "SQLiteMailboxStore", "TokenStore"]
