"""Persistence for the therapy chat platform.

``ChatStore`` is the interface the orchestration core depends on.
``InMemoryChatStore`` backs development and tests; ``PostgresChatStore``
backs production through a pooled psycopg2 ``ConnectionManager``.
"""

from .connection import (
    DatabaseConfig,
    ConnectionManager,
    get_connection_manager,
)
from .repository import (
    BaseRepository,
    RepositoryError,
    NotFoundError,
    DuplicateError,
)
from .store import ChatStore
from .memory_store import InMemoryChatStore
from .postgres_store import PostgresChatStore

__all__ = [
    "DatabaseConfig",
    "ConnectionManager",
    "get_connection_manager",
    "BaseRepository",
    "RepositoryError",
    "NotFoundError",
    "DuplicateError",
    "ChatStore",
    "InMemoryChatStore",
    "PostgresChatStore",
]
