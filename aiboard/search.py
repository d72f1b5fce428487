"""
Message search strategies and mention matching.

Two strategies answer ``search(query, thread_id)`` with the same ordering
contract (newest first):

    FtsSearch   FTS5 MATCH on the trigram shadow table (indexed)
    LikeSearch  escaped LIKE substring scan (always available)

A strategy that cannot serve a query raises ``StrategyUnavailable`` and the
caller moves on to the next one. For plain text both return the same rows;
the fallback only changes availability, never matching semantics.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

LIKE_ESCAPE = "\\"

# Trigram tokenizer cannot match anything shorter than one trigram.
_TRIGRAM_MIN_LEN = 3

MESSAGE_COLUMNS = (
    "id, thread_id, session_id, sender, role, content, metadata, "
    "parent_id, source, created_at, updated_at"
)


class StrategyUnavailable(Exception):
    """Raised by a strategy that cannot serve the given query."""


def escape_like(text: str) -> str:
    """Escape LIKE metacharacters so ``%``, ``_`` and ``\\`` match literally."""
    return (
        text.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def fts_phrase(text: str) -> str:
    """Quote text as a single FTS5 phrase."""
    return '"' + text.replace('"', '""') + '"'


def _qualified(prefix: str) -> str:
    return ", ".join(f"{prefix}.{c.strip()}" for c in MESSAGE_COLUMNS.split(","))


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class SearchStrategy:
    """Interface shared by all search strategies."""

    name = "base"

    def search(
        self,
        conn: sqlite3.Connection,
        query: str,
        thread_id: Optional[str] = None,
    ) -> List[sqlite3.Row]:
        raise NotImplementedError


class FtsSearch(SearchStrategy):
    """Indexed substring search over ``messages_fts`` (trigram tokenizer)."""

    name = "fts"

    def search(self, conn, query, thread_id=None):
        if len(query) < _TRIGRAM_MIN_LEN:
            raise StrategyUnavailable(
                f"query shorter than {_TRIGRAM_MIN_LEN} characters"
            )
        sql = (
            f"SELECT {_qualified('m')} FROM messages m "
            "JOIN messages_fts fts ON m.rowid = fts.rowid "
            "WHERE messages_fts MATCH ?"
        )
        params: list = [fts_phrase(query)]
        if thread_id is not None:
            sql += " AND m.thread_id = ?"
            params.append(thread_id)
        sql += " ORDER BY m.created_at DESC, m.rowid DESC"
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            # Typical messages: "fts5: syntax error", "no such module: fts5"
            raise StrategyUnavailable(str(exc)) from exc


class LikeSearch(SearchStrategy):
    """Literal, case-sensitive substring scan.

    LIKE folds ASCII case; ``instr()`` pins the match to the exact text.
    """

    name = "like"

    def search(self, conn, query, thread_id=None):
        sql = (
            f"SELECT {MESSAGE_COLUMNS} FROM messages "
            f"WHERE content LIKE ? ESCAPE '{LIKE_ESCAPE}' "
            "AND instr(content, ?) > 0"
        )
        params: list = [f"%{escape_like(query)}%", query]
        if thread_id is not None:
            sql += " AND thread_id = ?"
            params.append(thread_id)
        sql += " ORDER BY created_at DESC, rowid DESC"
        return conn.execute(sql, params).fetchall()


def run_strategies(
    strategies: Iterable[SearchStrategy],
    conn: sqlite3.Connection,
    query: str,
    thread_id: Optional[str] = None,
) -> Tuple[List[sqlite3.Row], str]:
    """Try strategies in order; return (rows, name of the strategy used).

    The last strategy is expected to always serve the query. If every
    strategy declines, the last ``StrategyUnavailable`` propagates.
    """
    last_exc: Optional[StrategyUnavailable] = None
    for strategy in strategies:
        try:
            rows = strategy.search(conn, query, thread_id)
        except StrategyUnavailable as exc:
            logger.debug("[search] %s declined %r: %s", strategy.name, query, exc)
            last_exc = exc
            continue
        logger.debug("[search] %s(%r) → %d hits", strategy.name, query, len(rows))
        return rows, strategy.name
    if last_exc is None:
        raise StrategyUnavailable("no search strategy configured")
    raise last_exc


# ---------------------------------------------------------------------------
# Mentions
# ---------------------------------------------------------------------------

def mention_pattern(target: str) -> str:
    """LIKE pre-filter pattern for ``@target`` (over-approximate)."""
    return f"%@{escape_like(target)}%"


def has_mention(content: str, target: str) -> bool:
    """True if ``@target`` occurs in content at a word boundary.

    The character after the name must be absent (end of text) or neither
    alphanumeric nor ``_``: ``@alice!`` matches, ``@alicex`` and
    ``@alice_bot`` do not.
    """
    mention = "@" + target
    start = 0
    while True:
        pos = content.find(mention, start)
        if pos < 0:
            return False
        end = pos + len(mention)
        if end >= len(content):
            return True
        nxt = content[end]
        if not nxt.isalnum() and nxt != "_":
            return True
        start = pos + 1
