"""
Board — use cases over the thread and message stores.

The Board is what the CLI talks to. It resolves short ids, validates content
before it reaches the store, applies the default provenance tag, and owns the
application-level cascade when a thread is deleted.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from aiboard.cleanup import Cleanup
from aiboard.config import BoardConfig
from aiboard.errors import InvalidInputError, NotFoundError
from aiboard.store import Database, MessageStore, ThreadStore
from aiboard.types import Message, Thread, parse_phase, parse_role

logger = logging.getLogger(__name__)

CHECKPOINT_TYPE = "checkpoint"


def validate_content(content: str, max_bytes: int = 1_048_576) -> None:
    """Reject content over *max_bytes* UTF-8 bytes or containing NUL."""
    if content is None:
        raise InvalidInputError("content is required")
    size = len(content.encode("utf-8"))
    if size > max_bytes:
        raise InvalidInputError(
            f"content exceeds {max_bytes} byte limit ({size} bytes)"
        )
    if "\x00" in content:
        raise InvalidInputError("content contains NUL bytes")


class Board:
    """Thread/message use cases on one database."""

    def __init__(self, db: Database, config: Optional[BoardConfig] = None):
        self.db = db
        self.config = config or BoardConfig()
        self.threads = ThreadStore(db)
        self.messages = MessageStore(db)
        self.cleanup = Cleanup(self.threads, self.messages)

    @classmethod
    def open(cls, path: Optional[str] = None, config: Optional[BoardConfig] = None) -> Board:
        """Open the board at *path* (default: ``config.store.db_path``)."""
        config = config or BoardConfig()
        db = Database.open(
            path or config.store.db_path,
            busy_timeout_ms=config.store.busy_timeout_ms,
            wal_mode=config.store.wal_mode,
        )
        return cls(db, config)

    @classmethod
    def open_ephemeral(cls, config: Optional[BoardConfig] = None) -> Board:
        return cls(Database.open_ephemeral(), config)

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> Board:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- Threads -----------------------------------------------------------

    def create_thread(
        self,
        title: str,
        name: Optional[str] = None,
        source_url: Optional[str] = None,
    ) -> Thread:
        if not title or not title.strip():
            raise InvalidInputError("thread title is required")
        thread = Thread(title=title, name=name, source_url=source_url)
        return self.threads.create(thread)

    def get_thread(self, ref: str) -> Thread:
        """Thread by full or short id."""
        full_id = self.threads.resolve_short(ref)
        thread = self.threads.find_by_id(full_id)
        if thread is None:
            # Deleted between resolution and read
            raise NotFoundError("thread", ref)
        return thread

    def list_threads(self, status: Optional[str] = None) -> List[Thread]:
        return self.threads.list(status)

    def close_thread(self, ref: str) -> str:
        full_id = self.threads.resolve_short(ref)
        self.threads.update_status(full_id, "closed")
        return full_id

    def reopen_thread(self, ref: str) -> str:
        full_id = self.threads.resolve_short(ref)
        self.threads.update_status(full_id, "open")
        return full_id

    def set_phase(self, ref: str, phase: Optional[str]) -> str:
        parsed = parse_phase(phase)
        full_id = self.threads.resolve_short(ref)
        self.threads.update_phase(full_id, parsed)
        return full_id

    def delete_thread(self, ref: str) -> int:
        """Delete a thread and its messages. Returns messages removed."""
        full_id = self.threads.resolve_short(ref)
        return self.cleanup.by_thread(full_id)

    # -- Messages ----------------------------------------------------------

    def post(
        self,
        thread_ref: str,
        content: str,
        role: str = "user",
        session_id: Optional[str] = None,
        sender: Optional[str] = None,
        metadata: Any = None,
        parent_ref: Optional[str] = None,
        source: Optional[str] = None,
        msg_type: Optional[str] = None,
    ) -> Message:
        """Post a message to an existing thread.

        Closed threads still accept posts; a warning is logged.
        """
        validate_content(content, self.config.content.max_content_bytes)
        role = parse_role(role)
        if msg_type is not None:
            metadata = _merge_msg_type(metadata, msg_type)
        thread = self.get_thread(thread_ref)
        if thread.status == "closed":
            logger.warning("thread %s is closed", thread.short_id)
        parent_id = self.messages.resolve_short(parent_ref) if parent_ref else None
        if source is None:
            source = "agent" if sender else "manual"
        msg = Message(
            thread_id=thread.id,
            content=content,
            role=role,
            session_id=session_id,
            sender=sender,
            metadata=metadata,
            parent_id=parent_id,
            source=source,
        )
        return self.messages.insert(msg)

    def read(
        self,
        thread_ref: Optional[str] = None,
        limit: Optional[int] = None,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
        msg_type: Optional[str] = None,
        since_checkpoint: bool = False,
    ) -> List[Message]:
        """Messages of one thread (conversation order) or the latest overall.

        ``limit=None`` means no limit on a thread and ``read.default_limit``
        across threads; ``limit=0`` returns nothing.
        """
        if limit is not None and limit < 0:
            raise InvalidInputError(f"limit must be >= 0, got {limit}")

        if thread_ref is None:
            if since_checkpoint:
                raise InvalidInputError("--since-checkpoint requires a thread")
            if limit is None:
                limit = self.config.read.default_limit
            if msg_type is None:
                return self.messages.list_recent(limit)
            newest_first = self.messages.find_by_type(msg_type)[::-1]
            return newest_first[:limit]

        thread_id = self.threads.resolve_short(thread_ref)
        if since_checkpoint:
            messages = self.messages.find_since_last_type(thread_id, CHECKPOINT_TYPE)
            if msg_type is not None:
                typed = {m.id for m in self.messages.find_by_type(msg_type, thread_id)}
                messages = [m for m in messages if m.id in typed]
            if after is not None:
                messages = [m for m in messages if m.created_at > after]
            if before is not None:
                messages = [m for m in messages if m.created_at < before]
        elif msg_type is not None:
            messages = self.messages.find_by_type(
                msg_type, thread_id, after=after, before=before,
            )
        else:
            messages = self.messages.find_by_thread(thread_id, after=after, before=before)
        if limit is not None:
            messages = messages[:limit]
        return messages

    def search(self, query: str, thread_ref: Optional[str] = None) -> List[Message]:
        thread_id = self.threads.resolve_short(thread_ref) if thread_ref else None
        return self.messages.search(query, thread_id)

    def mentions(self, target: str, thread_ref: Optional[str] = None) -> List[Message]:
        thread_id = self.threads.resolve_short(thread_ref) if thread_ref else None
        return self.messages.find_mentions(target.lstrip("@"), thread_id)

    def count_mentions(self, target: str, thread_ref: Optional[str] = None) -> int:
        thread_id = self.threads.resolve_short(thread_ref) if thread_ref else None
        return self.messages.count_mentions(target.lstrip("@"), thread_id)

    def update(self, message_ref: str, content: str) -> str:
        """Replace a message's content. Returns the full message id."""
        validate_content(content, self.config.content.max_content_bytes)
        full_id = self.messages.resolve_short(message_ref)
        self.messages.update_content(full_id, content)
        return full_id

    # -- Stats -------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the board."""
        return {
            "db_path": self.db.path,
            "schema_version": self.db.schema_version(),
            "fts5_available": self.db.fts_available,
            "threads": self.threads.count(),
            "threads_open": self.threads.count("open"),
            "threads_closed": self.threads.count("closed"),
            "messages": self.messages.count(),
        }


def _merge_msg_type(metadata: Any, msg_type: str) -> Dict[str, Any]:
    """Store *msg_type* under ``metadata["msg_type"]``."""
    if metadata is None:
        return {"msg_type": msg_type}
    if not isinstance(metadata, dict):
        raise InvalidInputError("msg_type requires metadata to be a JSON object")
    if "msg_type" in metadata:
        raise InvalidInputError(
            "msg_type given both as an option and in metadata"
        )
    merged = dict(metadata)
    merged["msg_type"] = msg_type
    return merged
