"""
Retention and cleanup operations.

Bulk deletions composed from the thread and message stores. ``by_thread`` is
the one place where deleting a thread cascades to its messages: the store has
no foreign keys, so the cascade is this module's job.

``by_thread`` is two steps, not one transaction: messages go first, then the
thread row. A crash in between leaves an empty thread behind, never orphaned
content.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from aiboard.errors import InvalidInputError
from aiboard.store import MessageStore, ThreadStore

logger = logging.getLogger(__name__)


class Cleanup:
    """Age-, thread- and session-scoped bulk deletion."""

    def __init__(self, threads: ThreadStore, messages: MessageStore):
        self._threads = threads
        self._messages = messages

    def by_age(self, days: int, now: Optional[datetime] = None) -> int:
        """Delete messages created more than *days* days before *now*.

        Returns the number of messages removed.
        """
        if days < 0:
            raise InvalidInputError(f"days must be >= 0, got {days}")
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=days)
        count = self._messages.delete_older_than(cutoff)
        logger.info("[cleanup] %d messages older than %d days removed", count, days)
        return count

    def by_thread(self, thread_id: str) -> int:
        """Delete a thread and all of its messages.

        Returns the number of messages removed. Raises NotFoundError if the
        thread row does not exist (its messages are already gone by then).
        """
        count = self._messages.delete_by_thread(thread_id)
        self._threads.delete(thread_id)
        logger.info("[cleanup] thread %s removed with %d messages", thread_id, count)
        return count

    def by_session(self, session_id: str) -> int:
        """Delete every message carrying *session_id*. Threads are kept."""
        count = self._messages.delete_by_session(session_id)
        logger.info("[cleanup] %d messages of session %s removed", count, session_id)
        return count
