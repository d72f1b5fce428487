"""
Board Store — SQLite Persistent Backend

Tables:
    threads         - Thread rows (status/phase lifecycle)
    messages        - Message rows (no FK to threads, see migrations.py)
    messages_fts    - FTS5 trigram shadow of messages.content (optional)
    schema_version  - One row per applied migration

Thread safety: uses sqlite3 check_same_thread=False with explicit
serialization. The connection runs in autocommit mode, so every single
statement is atomic on its own; multi-row writes open an explicit
transaction.
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional

from aiboard.errors import (
    AmbiguousPrefixError,
    DatabaseError,
    InvalidInputError,
    NotFoundError,
)
from aiboard.migrations import SCHEMA_VERSION, apply_migrations, current_version
from aiboard.search import (
    FtsSearch,
    LikeSearch,
    LIKE_ESCAPE,
    MESSAGE_COLUMNS,
    SearchStrategy,
    has_mention,
    mention_pattern,
    run_strategies,
)
from aiboard.types import (
    VALID_PHASES,
    VALID_ROLES,
    VALID_STATUSES,
    Message,
    Thread,
    _now_utc,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_MS = 5000

THREAD_COLUMNS = (
    "id, name, title, source_url, status, phase, created_at, updated_at"
)

# ---------------------------------------------------------------------------
# FTS5 Schema (separate: requires SQLite FTS5 with the trigram tokenizer)
# ---------------------------------------------------------------------------
# External-content mode: the index mirrors messages.content and stores no
# duplicate text. Triggers keep it in sync with the main table.
# ---------------------------------------------------------------------------

FTS_TOKENIZER = "trigram case_sensitive 1"

_FTS5_SCHEMA_SQL = f"""
CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
    content,
    content='messages',
    content_rowid='rowid',
    tokenize='{FTS_TOKENIZER}'
);

CREATE TRIGGER IF NOT EXISTS messages_fts_ai AFTER INSERT ON messages BEGIN
    INSERT INTO messages_fts(rowid, content) VALUES (new.rowid, new.content);
END;

CREATE TRIGGER IF NOT EXISTS messages_fts_ad AFTER DELETE ON messages BEGIN
    INSERT INTO messages_fts(messages_fts, rowid, content)
    VALUES ('delete', old.rowid, old.content);
END;

CREATE TRIGGER IF NOT EXISTS messages_fts_au AFTER UPDATE OF content ON messages BEGIN
    INSERT INTO messages_fts(messages_fts, rowid, content)
    VALUES ('delete', old.rowid, old.content);
    INSERT INTO messages_fts(rowid, content) VALUES (new.rowid, new.content);
END;
"""


@contextlib.contextmanager
def _db_errors(action: str) -> Iterator[None]:
    """Translate sqlite3 errors into DatabaseError with context."""
    try:
        yield
    except sqlite3.Error as exc:
        raise DatabaseError(f"failed to {action}: {exc}") from exc


# ---------------------------------------------------------------------------
# Database (schema manager)
# ---------------------------------------------------------------------------

class Database:
    """
    Owns the SQLite connection: pragmas, migrations and the FTS5 shadow.

    Use ``Database.open(path)`` for a file and ``Database.open_ephemeral()``
    for a process-local in-memory instance.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        wal_mode: bool = True,
    ):
        """Open the database, configure it and bring the schema up to date.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            busy_timeout_ms: How long a writer waits on another process's
                lock before failing.
            wal_mode: Enable WAL journal mode (file databases only).

        Raises:
            DatabaseError: the file cannot be opened or configured.
            MigrationError: a migration failed (the connection is closed).
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        self._fts_available: bool = False
        if db_path != ":memory:":
            try:
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise DatabaseError(f"failed to create database directory: {exc}") from exc
        with _db_errors("open database"):
            self._conn = sqlite3.connect(
                db_path,
                timeout=busy_timeout_ms / 1000.0,
                check_same_thread=False,
                isolation_level=None,
            )
        self._conn.row_factory = sqlite3.Row
        try:
            self._configure(busy_timeout_ms, wal_mode and db_path != ":memory:")
            applied = apply_migrations(self._conn)
        except Exception:
            self._conn.close()
            raise
        if applied:
            logger.info(f"Schema migrated to v{applied[-1]}: {db_path}")
        self._init_fts5()
        logger.info(
            f"Database opened: {db_path} "
            f"(schema=v{SCHEMA_VERSION}, fts5={'yes' if self._fts_available else 'no'})"
        )

    @classmethod
    def open(
        cls,
        path: str,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        wal_mode: bool = True,
    ) -> Database:
        """Open or create the database file at *path*."""
        return cls(str(path), busy_timeout_ms=busy_timeout_ms, wal_mode=wal_mode)

    @classmethod
    def open_ephemeral(cls) -> Database:
        """Create a non-persisted database (tests, dry runs)."""
        return cls(":memory:")

    def _configure(self, busy_timeout_ms: int, wal_mode: bool) -> None:
        # foreign_keys=OFF: referential integrity is enforced by the
        # application (Cleanup, Board), not by the store.
        with _db_errors("configure database"):
            if wal_mode:
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=OFF")

    def _init_fts5(self) -> None:
        """
        Create the FTS5 shadow table and its sync triggers.

        If the SQLite build lacks FTS5 or the trigram tokenizer, this sets
        ``fts_available = False`` and searches use the LIKE strategy only.
        A shadow table created over existing messages is rebuilt so it does
        not miss rows written while FTS5 was unavailable.
        """
        conn = self._conn
        try:
            fts_existed = conn.execute(
                "SELECT 1 FROM sqlite_master "
                "WHERE type='table' AND name='messages_fts'"
            ).fetchone() is not None
            conn.executescript(_FTS5_SCHEMA_SQL)
            self._fts_available = True
            if not fts_existed:
                has_rows = conn.execute(
                    "SELECT 1 FROM messages LIMIT 1"
                ).fetchone() is not None
                if has_rows:
                    conn.execute(
                        "INSERT INTO messages_fts(messages_fts) VALUES ('rebuild')"
                    )
            logger.debug(f"FTS5 shadow table ready (tokenizer={FTS_TOKENIZER})")
        except sqlite3.OperationalError as exc:
            # Typical messages: "no such module: fts5", "no such tokenizer: trigram"
            self._fts_available = False
            logger.info(f"FTS5 not available, falling back to LIKE search: {exc}")

    # -- Properties --------------------------------------------------------

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def fts_available(self) -> bool:
        return self._fts_available

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def schema_version(self) -> int:
        """Highest applied migration version."""
        with self._lock, _db_errors("read schema version"):
            return current_version(self._conn)

    def rebuild_fts(self) -> int:
        """
        Rebuild the FTS5 index from the messages table.

        Returns the number of messages indexed, or -1 if FTS5 is unavailable.
        """
        if not self._fts_available:
            logger.warning("rebuild_fts called but FTS5 is not available")
            return -1
        with self._lock, _db_errors("rebuild FTS index"):
            self._conn.execute(
                "INSERT INTO messages_fts(messages_fts) VALUES ('rebuild')"
            )
            count = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM messages"
            ).fetchone()["cnt"]
        logger.info(f"FTS5 index rebuilt: {count} messages indexed")
        return count

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Identifier resolution (shared by both stores)
# ---------------------------------------------------------------------------

_ID_TABLES = {"thread": "threads", "message": "messages"}


def resolve_prefix(db: Database, kind: str, prefix: str) -> str:
    """Map a short id to exactly one full id of the given kind.

    Matching is a case-sensitive prefix comparison (no LIKE wildcards), so a
    full id resolves to itself.

    Raises:
        NotFoundError: nothing starts with *prefix*.
        AmbiguousPrefixError: more than one id starts with *prefix*.
        InvalidInputError: *prefix* is empty or *kind* is unknown.
    """
    table = _ID_TABLES.get(kind)
    if table is None:
        raise InvalidInputError(f"unknown entity kind: {kind!r}")
    if not prefix:
        raise InvalidInputError(f"empty {kind} id")
    with db.lock, _db_errors(f"resolve {kind} id"):
        rows = db.conn.execute(
            f"SELECT id FROM {table} WHERE substr(id, 1, ?) = ? LIMIT 2",
            (len(prefix), prefix),
        ).fetchall()
        if len(rows) > 1:
            count = db.conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE substr(id, 1, ?) = ?",
                (len(prefix), prefix),
            ).fetchone()[0]
            raise AmbiguousPrefixError(prefix, count)
    if not rows:
        raise NotFoundError(kind, prefix)
    return rows[0]["id"]


# ---------------------------------------------------------------------------
# ThreadStore
# ---------------------------------------------------------------------------

class ThreadStore:
    """CRUD and status/phase lifecycle for threads."""

    def __init__(self, db: Database):
        self._db = db

    def create(self, thread: Thread) -> Thread:
        """Insert a new thread. Duplicate ids/names raise DatabaseError."""
        with self._db.lock, _db_errors("create thread"):
            self._db.conn.execute(
                f"INSERT INTO threads ({THREAD_COLUMNS}) VALUES (?,?,?,?,?,?,?,?)",
                self._params(thread),
            )
        logger.debug("Created thread %s", thread.id)
        return thread

    def upsert(self, thread: Thread) -> bool:
        """Insert the thread unless its id already exists.

        Returns True if a row was inserted, False if it was already there.
        """
        with self._db.lock, _db_errors("upsert thread"):
            cur = self._db.conn.execute(
                f"INSERT OR IGNORE INTO threads ({THREAD_COLUMNS}) "
                "VALUES (?,?,?,?,?,?,?,?)",
                self._params(thread),
            )
            return cur.rowcount > 0

    def find_by_id(self, thread_id: str) -> Optional[Thread]:
        """Read a single thread by full id."""
        with self._db.lock, _db_errors("read thread"):
            row = self._db.conn.execute(
                f"SELECT {THREAD_COLUMNS} FROM threads WHERE id=?", (thread_id,)
            ).fetchone()
        return self._row_to_thread(row) if row is not None else None

    def list(self, status: Optional[str] = None) -> List[Thread]:
        """List threads, most recently updated first."""
        if status is not None and status not in VALID_STATUSES:
            raise InvalidInputError(f"unknown thread status: {status!r}")
        sql = f"SELECT {THREAD_COLUMNS} FROM threads"
        params: list = []
        if status is not None:
            sql += " WHERE status=?"
            params.append(status)
        sql += " ORDER BY updated_at DESC, rowid DESC"
        with self._db.lock, _db_errors("list threads"):
            rows = self._db.conn.execute(sql, params).fetchall()
        return [self._row_to_thread(r) for r in rows]

    def update_status(self, thread_id: str, status: str) -> None:
        if status not in VALID_STATUSES:
            raise InvalidInputError(f"unknown thread status: {status!r}")
        self._update(thread_id, "status", status)

    def update_phase(self, thread_id: str, phase: Optional[str]) -> None:
        """Set the phase; ``None`` clears it."""
        if phase is not None and phase not in VALID_PHASES:
            raise InvalidInputError(f"unknown thread phase: {phase!r}")
        self._update(thread_id, "phase", phase)

    def delete(self, thread_id: str) -> None:
        """Delete the thread row only. Messages are left to the caller."""
        with self._db.lock, _db_errors("delete thread"):
            cur = self._db.conn.execute(
                "DELETE FROM threads WHERE id=?", (thread_id,)
            )
        if cur.rowcount == 0:
            raise NotFoundError("thread", thread_id)
        logger.debug("Deleted thread %s", thread_id)

    def resolve_short(self, prefix: str) -> str:
        return resolve_prefix(self._db, "thread", prefix)

    def count(self, status: Optional[str] = None) -> int:
        with self._db.lock, _db_errors("count threads"):
            if status is None:
                row = self._db.conn.execute(
                    "SELECT COUNT(*) AS cnt FROM threads"
                ).fetchone()
            else:
                row = self._db.conn.execute(
                    "SELECT COUNT(*) AS cnt FROM threads WHERE status=?",
                    (status,),
                ).fetchone()
        return row["cnt"]

    # -- Internal helpers --------------------------------------------------

    def _update(self, thread_id: str, column: str, value: Any) -> None:
        # column comes from the two callers above, never from user input
        with self._db.lock, _db_errors(f"update thread {column}"):
            cur = self._db.conn.execute(
                f"UPDATE threads SET {column}=?, updated_at=MAX(?, created_at) WHERE id=?",
                (value, format_timestamp(_now_utc()), thread_id),
            )
        if cur.rowcount == 0:
            raise NotFoundError("thread", thread_id)

    @staticmethod
    def _params(thread: Thread) -> tuple:
        return (
            thread.id, thread.name, thread.title, thread.source_url,
            thread.status, thread.phase,
            format_timestamp(thread.created_at),
            format_timestamp(thread.updated_at),
        )

    @staticmethod
    def _row_to_thread(row: sqlite3.Row) -> Thread:
        return Thread(
            id=row["id"],
            name=row["name"],
            title=row["title"],
            source_url=row["source_url"],
            status=row["status"],
            phase=row["phase"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


# ---------------------------------------------------------------------------
# MessageStore
# ---------------------------------------------------------------------------

class MessageStore:
    """
    CRUD, atomic batch insert, filters, search and mentions for messages.
    """

    def __init__(self, db: Database):
        self._db = db
        self.last_search_strategy: Optional[str] = None

    # -- Write operations --------------------------------------------------

    def insert(self, message: Message) -> Message:
        """Insert one message. Writes exactly the caller-supplied values."""
        params = self._params(message)
        with self._db.lock, _db_errors("insert message"):
            self._db.conn.execute(self._INSERT_SQL, params)
        return message

    def insert_batch(self, messages: List[Message]) -> int:
        """
        Insert all messages or none.

        Any failure rolls the whole batch back and re-raises the error
        (SQLite errors as DatabaseError, bad values as InvalidInputError).
        """
        if not messages:
            return 0
        conn = self._db.conn
        with self._db.lock:
            with _db_errors("begin transaction"):
                conn.execute("BEGIN IMMEDIATE")
            try:
                for msg in messages:
                    with _db_errors("insert message"):
                        conn.execute(self._INSERT_SQL, self._params(msg))
                with _db_errors("commit transaction"):
                    conn.execute("COMMIT")
            except Exception:
                if conn.in_transaction:
                    try:
                        conn.execute("ROLLBACK")
                    except sqlite3.Error as exc:
                        # the original error is the one the caller sees
                        logger.error("Rollback of batch insert failed: %s", exc)
                logger.warning("Batch insert of %d messages rolled back", len(messages))
                raise
        logger.debug("Inserted batch of %d messages", len(messages))
        return len(messages)

    def update_content(self, message_id: str, content: str) -> None:
        """Replace content and stamp ``updated_at`` (never before ``created_at``)."""
        with self._db.lock, _db_errors("update message"):
            cur = self._db.conn.execute(
                "UPDATE messages SET content=?, updated_at=MAX(?, created_at) WHERE id=?",
                (content, format_timestamp(_now_utc()), message_id),
            )
        if cur.rowcount == 0:
            raise NotFoundError("message", message_id)

    def delete_by_thread(self, thread_id: str) -> int:
        return self._delete("thread_id = ?", (thread_id,), "delete thread messages")

    def delete_by_session(self, session_id: str) -> int:
        return self._delete("session_id = ?", (session_id,), "delete session messages")

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete messages created strictly before *cutoff*."""
        return self._delete(
            "created_at < ?", (format_timestamp(cutoff),), "delete old messages",
        )

    # -- Query operations --------------------------------------------------

    def find_by_id(self, message_id: str) -> Optional[Message]:
        with self._db.lock, _db_errors("read message"):
            row = self._db.conn.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id=?",
                (message_id,),
            ).fetchone()
        return self._row_to_message(row) if row is not None else None

    def find_by_thread(
        self,
        thread_id: str,
        *,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """Messages of a thread in conversation order (oldest first).

        ``after``/``before`` are exclusive bounds on ``created_at``; ``limit``
        keeps the first N messages of the filtered range.
        """
        conditions = ["thread_id = ?"]
        params: list = [thread_id]
        if after is not None:
            conditions.append("created_at > ?")
            params.append(format_timestamp(after))
        if before is not None:
            conditions.append("created_at < ?")
            params.append(format_timestamp(before))
        sql = (
            f"SELECT {MESSAGE_COLUMNS} FROM messages "
            f"WHERE {' AND '.join(conditions)} "
            "ORDER BY created_at ASC, rowid ASC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, int(limit)))
        return self._query(sql, params, "read thread messages")

    def list_recent(self, limit: int = 20) -> List[Message]:
        """Newest messages across all threads."""
        return self._query(
            f"SELECT {MESSAGE_COLUMNS} FROM messages "
            "ORDER BY created_at DESC, rowid DESC LIMIT ?",
            [max(0, int(limit))],
            "list recent messages",
        )

    def search(self, query: str, thread_id: Optional[str] = None) -> List[Message]:
        """
        Substring search, indexed when possible, newest first.

        Strategy:
            1. FtsSearch (only if the FTS5 shadow table exists).
            2. LikeSearch (escaped LIKE, always available).
        A strategy that declines the query hands over to the next one. The
        strategy that served the request is kept in ``last_search_strategy``.
        """
        strategies: List[SearchStrategy] = []
        if self._db.fts_available:
            strategies.append(FtsSearch())
        strategies.append(LikeSearch())
        with self._db.lock, _db_errors("search messages"):
            rows, used = run_strategies(strategies, self._db.conn, query, thread_id)
        if used != strategies[0].name:
            logger.debug("Search served by %s fallback", used)
        self.last_search_strategy = used
        return [self._row_to_message(r) for r in rows]

    def find_mentions(
        self, target: str, thread_id: Optional[str] = None,
    ) -> List[Message]:
        """
        Messages mentioning ``@target`` at a word boundary, newest first.

        Two phases: an escaped LIKE pre-filter narrows candidates, then each
        candidate is re-scanned to confirm the boundary and drop false
        positives such as ``@targetx``.
        """
        if not target:
            raise InvalidInputError("empty mention target")
        sql = (
            f"SELECT {MESSAGE_COLUMNS} FROM messages "
            f"WHERE content LIKE ? ESCAPE '{LIKE_ESCAPE}'"
        )
        params: list = [mention_pattern(target)]
        if thread_id is not None:
            sql += " AND thread_id = ?"
            params.append(thread_id)
        sql += " ORDER BY created_at DESC, rowid DESC"
        candidates = self._query(sql, params, "find mentions")
        confirmed = [m for m in candidates if has_mention(m.content, target)]
        logger.debug(
            "[mentions] @%s: %d candidates, %d confirmed",
            target, len(candidates), len(confirmed),
        )
        return confirmed

    def count_mentions(self, target: str, thread_id: Optional[str] = None) -> int:
        return len(self.find_mentions(target, thread_id))

    def find_by_type(
        self,
        msg_type: str,
        thread_id: Optional[str] = None,
        *,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
    ) -> List[Message]:
        """Messages whose ``metadata["msg_type"]`` equals *msg_type*.

        Conversation order (oldest first); ``after``/``before`` are exclusive
        bounds on ``created_at`` as in ``find_by_thread``.
        """
        sql = f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE metadata IS NOT NULL"
        params: list = []
        if thread_id is not None:
            sql += " AND thread_id = ?"
            params.append(thread_id)
        if after is not None:
            sql += " AND created_at > ?"
            params.append(format_timestamp(after))
        if before is not None:
            sql += " AND created_at < ?"
            params.append(format_timestamp(before))
        sql += " ORDER BY created_at ASC, rowid ASC"
        # Filter in Python: JSON1 support varies across SQLite builds
        rows = self._query(sql, params, "find messages by type")
        return [m for m in rows if m.msg_type == msg_type]

    def find_since_last_type(self, thread_id: str, msg_type: str) -> List[Message]:
        """Thread messages after the last one of *msg_type* (all if none)."""
        messages = self.find_by_thread(thread_id)
        last = -1
        for i, msg in enumerate(messages):
            if msg.msg_type == msg_type:
                last = i
        return messages[last + 1:]

    def resolve_short(self, prefix: str) -> str:
        return resolve_prefix(self._db, "message", prefix)

    def count(self) -> int:
        with self._db.lock, _db_errors("count messages"):
            row = self._db.conn.execute(
                "SELECT COUNT(*) AS cnt FROM messages"
            ).fetchone()
        return row["cnt"]

    # -- Internal helpers --------------------------------------------------

    _INSERT_SQL = (
        f"INSERT INTO messages ({MESSAGE_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?)"
    )

    def _query(self, sql: str, params: list, action: str) -> List[Message]:
        with self._db.lock, _db_errors(action):
            rows = self._db.conn.execute(sql, params).fetchall()
        return [self._row_to_message(r) for r in rows]

    def _delete(self, where: str, params: tuple, action: str) -> int:
        with self._db.lock, _db_errors(action):
            cur = self._db.conn.execute(f"DELETE FROM messages WHERE {where}", params)
        logger.info(f"{action}: {cur.rowcount} rows removed")
        return cur.rowcount

    @staticmethod
    def _params(msg: Message) -> tuple:
        if msg.metadata is None:
            metadata_json = None
        else:
            try:
                metadata_json = json.dumps(msg.metadata, ensure_ascii=False)
            except (TypeError, ValueError) as exc:
                raise InvalidInputError(
                    f"message {msg.id}: metadata is not JSON-serializable: {exc}"
                ) from exc
        return (
            msg.id, msg.thread_id, msg.session_id, msg.sender, msg.role,
            msg.content, metadata_json, msg.parent_id, msg.source,
            format_timestamp(msg.created_at),
            format_timestamp(msg.updated_at),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        role = row["role"]
        if role not in VALID_ROLES:
            logger.warning("Message %s has unknown role %r, reading as user", row["id"], role)
            role = "user"
        metadata = None
        if row["metadata"] is not None:
            try:
                metadata = json.loads(row["metadata"])
            except ValueError:
                logger.warning("Message %s has unreadable metadata", row["id"])
        return Message(
            id=row["id"],
            thread_id=row["thread_id"],
            session_id=row["session_id"],
            sender=row["sender"],
            role=role,
            content=row["content"],
            metadata=metadata,
            parent_id=row["parent_id"],
            source=row["source"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )
