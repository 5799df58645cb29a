"""Token storage and session lifecycle."""

from .session import LoginResult, Session, SessionChange, SessionManager, SessionStatus
from .token_store import JsonFileStorage, MemoryStorage, StorageBackend, TokenStore

__all__ = [
    "JsonFileStorage",
    "LoginResult",
    "MemoryStorage",
    "Session",
    "SessionChange",
    "SessionManager",
    "SessionStatus",
    "StorageBackend",
    "TokenStore",
]
