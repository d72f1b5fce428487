"""
Tests for aiboard.cleanup — retention by age, thread and session.
"""

from datetime import datetime, timedelta, timezone

import pytest

from aiboard.cleanup import Cleanup
from aiboard.errors import InvalidInputError, NotFoundError
from aiboard.store import Database, MessageStore, ThreadStore
from aiboard.types import Message, Thread

NOW = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def env():
    d = Database.open_ephemeral()
    threads = ThreadStore(d)
    messages = MessageStore(d)
    yield threads, messages, Cleanup(threads, messages)
    d.close()


def aged(thread_id, content, days_ago, **kw):
    ts = NOW - timedelta(days=days_ago)
    return Message(thread_id=thread_id, content=content,
                   created_at=ts, updated_at=ts, **kw)


class TestByAge:
    def test_removes_only_older(self, env):
        threads, messages, cleanup = env
        messages.insert(aged("t", "ancient", 30))
        messages.insert(aged("t", "recent", 2))
        assert cleanup.by_age(7, now=NOW) == 1
        assert [m.content for m in messages.find_by_thread("t")] == ["recent"]

    def test_zero_days_removes_everything_before_now(self, env):
        threads, messages, cleanup = env
        messages.insert(aged("t", "a", 3))
        messages.insert(aged("t", "b", 0))
        later = NOW + timedelta(seconds=1)
        assert cleanup.by_age(0, now=later) == 2
        assert messages.count() == 0

    def test_threads_are_kept(self, env):
        threads, messages, cleanup = env
        t = threads.create(Thread(title="kept"))
        messages.insert(aged(t.id, "old", 100))
        cleanup.by_age(1, now=NOW)
        assert threads.find_by_id(t.id) is not None

    def test_negative_days(self, env):
        _, _, cleanup = env
        with pytest.raises(InvalidInputError):
            cleanup.by_age(-1)


class TestByThread:
    def test_cascades_to_messages(self, env):
        threads, messages, cleanup = env
        t = threads.create(Thread(title="doomed"))
        other = threads.create(Thread(title="other"))
        messages.insert(aged(t.id, "a", 1))
        messages.insert(aged(t.id, "b", 1))
        messages.insert(aged(other.id, "c", 1))
        assert cleanup.by_thread(t.id) == 2
        assert threads.find_by_id(t.id) is None
        assert t.id not in [x.id for x in threads.list()]
        assert messages.find_by_thread(t.id) == []
        assert [m.content for m in messages.find_by_thread(other.id)] == ["c"]

    def test_unknown_thread(self, env):
        _, _, cleanup = env
        with pytest.raises(NotFoundError):
            cleanup.by_thread("missing")


class TestBySession:
    def test_spans_threads(self, env):
        threads, messages, cleanup = env
        messages.insert(aged("t1", "a", 1, session_id="s1"))
        messages.insert(aged("t2", "b", 1, session_id="s1"))
        messages.insert(aged("t2", "c", 1, session_id="s2"))
        assert cleanup.by_session("s1") == 2
        assert [m.content for m in messages.find_by_thread("t2")] == ["c"]

    def test_unknown_session(self, env):
        _, _, cleanup = env
        assert cleanup.by_session("nobody") == 0
