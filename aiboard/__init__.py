"""
aiboard — threads and messages for agents that talk to each other.

One SQLite file holds every thread and message. Short ids resolve by prefix,
search goes through FTS5 when SQLite has it and an escaped LIKE scan when it
does not.
"""

__version__ = "0.1.0"

from aiboard.types import Message, Thread
from aiboard.errors import (
    AiboardError,
    AmbiguousPrefixError,
    DatabaseError,
    InvalidInputError,
    MigrationError,
    NotFoundError,
)
from aiboard.store import Database, MessageStore, ThreadStore, resolve_prefix
from aiboard.migrations import SCHEMA_VERSION
from aiboard.cleanup import Cleanup
from aiboard.board import Board
from aiboard.config import BoardConfig

__all__ = [
    "__version__",
    "Thread",
    "Message",
    "AiboardError",
    "AmbiguousPrefixError",
    "DatabaseError",
    "InvalidInputError",
    "MigrationError",
    "NotFoundError",
    "Database",
    "ThreadStore",
    "MessageStore",
    "resolve_prefix",
    "Cleanup",
    "Board",
    "BoardConfig",
    "SCHEMA_VERSION",
]
