"""Session store contract and interchangeable backends."""

from .collector import SessionCollector
from .files import FileSessionStore
from .memory import MemorySessionStore
from .sqlite import SqliteSessionStore
from .store import Session, SessionData, SessionStore

__all__ = [
    "FileSessionStore",
    "MemorySessionStore",
    "Session",
    "SessionCollector",
    "SessionData",
    "SessionStore",
    "SqliteSessionStore",
]
