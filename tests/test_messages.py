"""
Tests for aiboard.store.MessageStore — insert, batch, filters, updates, deletes.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from aiboard.errors import DatabaseError, InvalidInputError, NotFoundError
from aiboard.store import Database, MessageStore, ThreadStore
from aiboard.types import Message, Thread, _now_utc

T0 = datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def at(minutes):
    return T0 + timedelta(minutes=minutes)


@pytest.fixture
def db():
    d = Database.open_ephemeral()
    yield d
    d.close()


@pytest.fixture
def messages(db):
    return MessageStore(db)


@pytest.fixture
def thread(db):
    return ThreadStore(db).create(Thread(title="main"))


def msg(thread_id, content, minutes=0, **kw):
    return Message(thread_id=thread_id, content=content,
                   created_at=at(minutes), updated_at=at(minutes), **kw)


# ---------------------------------------------------------------------------
# Insert / find
# ---------------------------------------------------------------------------


class TestInsert:
    def test_roundtrip_all_fields(self, messages, thread):
        m = Message(
            thread_id=thread.id, content="hello", role="assistant",
            session_id="s1", sender="alice", metadata={"k": [1, 2], "n": None},
            parent_id="p1", source="agent", created_at=T0, updated_at=T0,
        )
        messages.insert(m)
        assert messages.find_by_id(m.id) == m

    @pytest.mark.parametrize("metadata", [["a", 1], "text", 42, {"nested": {"x": True}}])
    def test_metadata_any_json(self, messages, thread, metadata):
        m = messages.insert(Message(thread_id=thread.id, content="x", metadata=metadata))
        assert messages.find_by_id(m.id).metadata == metadata

    def test_unicode_content(self, messages, thread):
        m = messages.insert(Message(thread_id=thread.id, content="héllo 世界 🎉"))
        assert messages.find_by_id(m.id).content == "héllo 世界 🎉"

    def test_metadata_not_serializable(self, messages, thread):
        with pytest.raises(InvalidInputError):
            messages.insert(Message(thread_id=thread.id, content="x", metadata={"s": {1, 2}}))
        assert messages.count() == 0

    def test_duplicate_id(self, messages, thread):
        m = messages.insert(Message(thread_id=thread.id, content="x"))
        with pytest.raises(DatabaseError):
            messages.insert(Message(thread_id=thread.id, content="y", id=m.id))

    def test_store_does_not_check_thread(self, messages):
        # Referential checks are the Board's job
        m = messages.insert(Message(thread_id="no-such-thread", content="x"))
        assert messages.find_by_id(m.id) is not None

    def test_unknown_role_read_as_user(self, db, messages, caplog):
        db.conn.execute(
            "INSERT INTO messages (id, thread_id, role, content) "
            "VALUES ('odd', 't', 'robot', 'beep')"
        )
        with caplog.at_level(logging.WARNING, logger="aiboard.store"):
            got = messages.find_by_id("odd")
        assert got.role == "user"
        assert "robot" in caplog.text


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


class TestBatch:
    def test_all_inserted(self, messages, thread):
        batch = [msg(thread.id, f"m{i}", i) for i in range(5)]
        assert messages.insert_batch(batch) == 5
        assert [m.content for m in messages.find_by_thread(thread.id)] == \
            ["m0", "m1", "m2", "m3", "m4"]

    def test_empty_batch(self, messages):
        assert messages.insert_batch([]) == 0

    @pytest.mark.parametrize("k", [0, 2, 4])
    def test_duplicate_at_position_rolls_back(self, messages, thread, k):
        existing = messages.insert(msg(thread.id, "already here"))
        batch = [msg(thread.id, f"m{i}", i) for i in range(5)]
        batch[k] = Message(thread_id=thread.id, content="dup", id=existing.id)
        with pytest.raises(DatabaseError):
            messages.insert_batch(batch)
        assert messages.count() == 1

    def test_duplicate_within_batch(self, messages, thread):
        a = msg(thread.id, "a")
        b = Message(thread_id=thread.id, content="b", id=a.id)
        with pytest.raises(DatabaseError):
            messages.insert_batch([a, b])
        assert messages.count() == 0

    def test_bad_metadata_rolls_back(self, messages, thread):
        batch = [msg(thread.id, "ok"),
                 Message(thread_id=thread.id, content="bad", metadata=object())]
        with pytest.raises(InvalidInputError):
            messages.insert_batch(batch)
        assert messages.count() == 0

    def test_usable_after_failed_batch(self, db, messages, thread):
        a = msg(thread.id, "a")
        with pytest.raises(DatabaseError):
            messages.insert_batch([a, Message(thread_id=thread.id, content="b", id=a.id)])
        assert not db.conn.in_transaction
        assert messages.insert_batch([msg(thread.id, "c")]) == 1


# ---------------------------------------------------------------------------
# Thread reads
# ---------------------------------------------------------------------------


class TestFindByThread:
    def test_oldest_first_and_scoped(self, messages, thread):
        messages.insert(msg(thread.id, "second", 2))
        messages.insert(msg(thread.id, "first", 1))
        messages.insert(msg("other", "elsewhere", 0))
        assert [m.content for m in messages.find_by_thread(thread.id)] == ["first", "second"]

    def test_ties_keep_insertion_order(self, messages, thread):
        for c in ("a", "b", "c"):
            messages.insert(msg(thread.id, c, 0))
        assert [m.content for m in messages.find_by_thread(thread.id)] == ["a", "b", "c"]

    def test_time_range_is_exclusive(self, messages, thread):
        for i in range(5):
            messages.insert(msg(thread.id, f"m{i}", i))
        got = messages.find_by_thread(thread.id, after=at(1), before=at(4))
        assert [m.content for m in got] == ["m2", "m3"]

    def test_limit(self, messages, thread):
        for i in range(5):
            messages.insert(msg(thread.id, f"m{i}", i))
        got = messages.find_by_thread(thread.id, limit=2)
        assert [m.content for m in got] == ["m0", "m1"]

    def test_unknown_thread_is_empty(self, messages):
        assert messages.find_by_thread("missing") == []

    def test_list_recent_newest_first(self, messages, thread):
        for i in range(4):
            messages.insert(msg(thread.id, f"m{i}", i))
        assert [m.content for m in messages.list_recent(2)] == ["m3", "m2"]


class TestMsgType:
    def test_find_by_type(self, messages, thread):
        messages.insert(msg(thread.id, "plan", 0, metadata={"msg_type": "plan"}))
        messages.insert(msg(thread.id, "note", 1, metadata={"msg_type": "note"}))
        messages.insert(msg(thread.id, "raw", 2))
        got = messages.find_by_type("plan")
        assert [m.content for m in got] == ["plan"]
        assert messages.find_by_type("plan", thread_id="other") == []

    def test_find_by_type_time_range(self, messages, thread):
        for i in range(4):
            messages.insert(msg(thread.id, f"n{i}", i, metadata={"msg_type": "note"}))
        got = messages.find_by_type("note", thread.id, after=at(0), before=at(3))
        assert [m.content for m in got] == ["n1", "n2"]

    def test_since_last_checkpoint(self, messages, thread):
        messages.insert(msg(thread.id, "a", 0))
        messages.insert(msg(thread.id, "cp1", 1, metadata={"msg_type": "checkpoint"}))
        messages.insert(msg(thread.id, "b", 2))
        messages.insert(msg(thread.id, "cp2", 3, metadata={"msg_type": "checkpoint"}))
        messages.insert(msg(thread.id, "c", 4))
        messages.insert(msg(thread.id, "d", 5))
        got = messages.find_since_last_type(thread.id, "checkpoint")
        assert [m.content for m in got] == ["c", "d"]

    def test_no_checkpoint_returns_all(self, messages, thread):
        messages.insert(msg(thread.id, "a", 0))
        messages.insert(msg(thread.id, "b", 1))
        got = messages.find_since_last_type(thread.id, "checkpoint")
        assert [m.content for m in got] == ["a", "b"]


# ---------------------------------------------------------------------------
# Update / delete
# ---------------------------------------------------------------------------


class TestUpdateDelete:
    def test_update_content(self, messages, thread):
        m = messages.insert(msg(thread.id, "before"))
        messages.update_content(m.id, "after")
        got = messages.find_by_id(m.id)
        assert got.content == "after"
        assert got.created_at == T0
        assert got.updated_at > T0

    def test_update_unknown(self, messages):
        with pytest.raises(NotFoundError):
            messages.update_content("missing", "x")

    def test_delete_by_thread(self, messages, thread):
        messages.insert(msg(thread.id, "a"))
        messages.insert(msg(thread.id, "b"))
        messages.insert(msg("other", "c"))
        assert messages.delete_by_thread(thread.id) == 2
        assert messages.count() == 1

    def test_delete_by_session(self, messages, thread):
        messages.insert(msg(thread.id, "a", session_id="s1"))
        messages.insert(msg(thread.id, "b", session_id="s2"))
        assert messages.delete_by_session("s1") == 1
        assert messages.delete_by_session("s1") == 0

    def test_delete_older_than_is_strict(self, messages, thread):
        messages.insert(msg(thread.id, "old", 0))
        messages.insert(msg(thread.id, "edge", 10))
        messages.insert(msg(thread.id, "new", 20))
        assert messages.delete_older_than(at(10)) == 1
        assert [m.content for m in messages.find_by_thread(thread.id)] == ["edge", "new"]


class TestClockSkew:
    def test_update_keeps_updated_after_created(self, messages, thread):
        future = _now_utc() + timedelta(minutes=5)
        m = messages.insert(Message(thread_id=thread.id, content="ahead",
                                    created_at=future, updated_at=future))
        messages.update_content(m.id, "edited")
        got = messages.find_by_id(m.id)
        assert got.content == "edited"
        assert got.updated_at >= got.created_at


class _RollbackFails:
    """Connection wrapper whose ROLLBACK reports an error after rolling back."""

    def __init__(self, conn):
        self._conn = conn

    def __getattr__(self, name):
        return getattr(self._conn, name)

    def execute(self, sql, *params):
        if sql == "ROLLBACK":
            self._conn.execute("ROLLBACK")
            raise sqlite3.OperationalError("disk I/O error")
        return self._conn.execute(sql, *params)


class TestBatchRollbackFailure:
    def test_original_error_is_raised(self, db, messages, thread, caplog):
        a = msg(thread.id, "a")
        real = db._conn
        db._conn = _RollbackFails(real)
        try:
            with caplog.at_level(logging.ERROR, logger="aiboard.store"):
                with pytest.raises(DatabaseError, match="insert message"):
                    messages.insert_batch(
                        [a, Message(thread_id=thread.id, content="b", id=a.id)]
                    )
        finally:
            db._conn = real
        assert "Rollback of batch insert failed" in caplog.text
        assert messages.count() == 0
