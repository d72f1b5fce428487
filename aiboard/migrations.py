"""
Schema Migrations — ordered, versioned, applied once

Each migration is applied inside its own transaction together with the
``schema_version`` row that records it. A failing migration is rolled back
and aborts the open: the engine never runs on a partially migrated schema.

The FTS5 shadow table is not a migration. It depends on how SQLite was built
and is created (or skipped) by ``Database`` after the migrations run.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import List, NamedTuple

from aiboard.errors import MigrationError

logger = logging.getLogger(__name__)


class Migration(NamedTuple):
    version: int
    description: str
    sql: str


# Note: messages.thread_id has no FOREIGN KEY. Referential integrity is an
# application contract (Cleanup, Board), which keeps bulk deletes cheap and
# stays compatible with the FTS5 content-sync triggers.
_V1_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS threads (
    id         TEXT PRIMARY KEY NOT NULL,
    name       TEXT UNIQUE,
    title      TEXT NOT NULL,
    source_url TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS messages (
    id         TEXT PRIMARY KEY NOT NULL,
    thread_id  TEXT NOT NULL,
    session_id TEXT,
    sender     TEXT,
    role       TEXT NOT NULL DEFAULT 'user',
    content    TEXT NOT NULL DEFAULT '',
    metadata   TEXT,                       -- JSON, NULL when absent
    parent_id  TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_messages_thread_id ON messages(thread_id);
CREATE INDEX IF NOT EXISTS idx_messages_session_id ON messages(session_id);
CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages(created_at);
CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(sender);
"""

_V2_SQL = """
ALTER TABLE messages ADD COLUMN source TEXT;
CREATE INDEX IF NOT EXISTS idx_messages_source ON messages(source);
"""

_V3_SQL = """
ALTER TABLE threads ADD COLUMN status TEXT NOT NULL DEFAULT 'open'
    CHECK(status IN ('open', 'closed'));
CREATE INDEX IF NOT EXISTS idx_threads_status ON threads(status);
"""

_V4_SQL = """
ALTER TABLE threads ADD COLUMN phase TEXT
    CHECK(phase IS NULL OR phase IN ('planning', 'implementing', 'reviewing', 'done'));
"""

MIGRATIONS: List[Migration] = [
    Migration(1, "threads, messages, schema_version", _V1_SQL),
    Migration(2, "messages.source provenance tag", _V2_SQL),
    Migration(3, "threads.status (open/closed)", _V3_SQL),
    Migration(4, "threads.phase", _V4_SQL),
]

SCHEMA_VERSION = MIGRATIONS[-1].version


def current_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration version (0 for a fresh database)."""
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name='schema_version'"
    ).fetchone()
    if row is None:
        return 0
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) FROM schema_version"
    ).fetchone()
    return int(row[0])


def apply_migrations(
    conn: sqlite3.Connection, migrations: List[Migration] = MIGRATIONS,
) -> List[int]:
    """Apply every migration newer than the current version, in order.

    Returns the list of versions applied by this call (empty when the schema
    is already current).

    Raises:
        MigrationError: a migration failed; its transaction was rolled back.
    """
    try:
        version = current_version(conn)
    except sqlite3.Error as exc:
        raise MigrationError(f"failed to read schema version: {exc}") from exc

    applied: List[int] = []
    for mig in sorted(migrations, key=lambda m: m.version):
        if mig.version <= version:
            continue
        script = (
            "BEGIN;\n"
            f"{mig.sql}\n"
            f"INSERT INTO schema_version (version) VALUES ({int(mig.version)});\n"
            "COMMIT;\n"
        )
        try:
            conn.executescript(script)
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.rollback()
            raise MigrationError(
                f"migration v{mig.version} failed: {exc}"
            ) from exc
        logger.info("Applied migration v%d: %s", mig.version, mig.description)
        applied.append(mig.version)
    return applied
