"""
Tests for aiboard.types — Thread, Message and value parsers.
"""

from datetime import datetime, timedelta, timezone

import pytest

from aiboard.errors import InvalidInputError
from aiboard.types import (
    Message,
    Thread,
    _generate_id,
    _now_utc,
    format_timestamp,
    parse_phase,
    parse_role,
    parse_status,
    parse_timestamp,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_generate_id_uniqueness(self):
        ids = {_generate_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(len(i) == 36 for i in ids)

    def test_now_is_utc_seconds(self):
        now = _now_utc()
        assert now.tzinfo is not None
        assert now.microsecond == 0


class TestTimestamps:
    def test_format(self):
        dt = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert format_timestamp(dt) == "2025-01-02 03:04:05"

    def test_format_converts_offset(self):
        dt = datetime(2025, 1, 2, 5, 4, 5, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(dt) == "2025-01-02 03:04:05"

    @pytest.mark.parametrize("text", [
        "2025-01-02 03:04:05",
        "2025-01-02T03:04:05",
        "2025-01-02T03:04:05+00:00",
        "2025-01-02T05:04:05+02:00",
    ])
    def test_parse_variants(self, text):
        assert parse_timestamp(text) == datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_parse_date_only(self):
        assert parse_timestamp("2025-01-02") == datetime(2025, 1, 2, tzinfo=timezone.utc)

    @pytest.mark.parametrize("text", ["yesterday", "", "2025-13-01"])
    def test_parse_invalid(self, text):
        with pytest.raises(InvalidInputError):
            parse_timestamp(text)


class TestParsers:
    def test_role(self):
        assert parse_role(" Assistant ") == "assistant"
        with pytest.raises(InvalidInputError):
            parse_role("robot")

    def test_status(self):
        assert parse_status("CLOSED") == "closed"
        with pytest.raises(InvalidInputError):
            parse_status("archived")

    @pytest.mark.parametrize("value", [None, "", "none", "None"])
    def test_phase_clears(self, value):
        assert parse_phase(value) is None

    def test_phase(self):
        assert parse_phase("Reviewing") == "reviewing"
        with pytest.raises(InvalidInputError):
            parse_phase("shipping")


# ---------------------------------------------------------------------------
# Thread / Message
# ---------------------------------------------------------------------------


class TestThread:
    def test_defaults(self):
        t = Thread(title="x")
        assert t.status == "open"
        assert t.phase is None
        assert t.short_id == t.id[:8]

    def test_invalid_status(self):
        with pytest.raises(InvalidInputError):
            Thread(title="x", status="archived")

    def test_invalid_phase(self):
        with pytest.raises(InvalidInputError):
            Thread(title="x", phase="shipping")

    def test_updated_before_created(self):
        now = _now_utc()
        with pytest.raises(InvalidInputError):
            Thread(title="x", created_at=now, updated_at=now - timedelta(seconds=1))

    def test_to_dict(self):
        t = Thread(title="x", created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
                   updated_at=datetime(2025, 1, 1, tzinfo=timezone.utc))
        d = t.to_dict()
        assert d["title"] == "x"
        assert d["created_at"] == "2025-01-01T00:00:00+00:00"


class TestMessage:
    def test_invalid_role(self):
        with pytest.raises(InvalidInputError):
            Message(thread_id="t", content="x", role="robot")

    @pytest.mark.parametrize("metadata, expected", [
        ({"msg_type": "plan"}, "plan"),
        ({"msg_type": 3}, None),
        ({"other": 1}, None),
        (["msg_type"], None),
        (None, None),
    ])
    def test_msg_type(self, metadata, expected):
        assert Message(thread_id="t", metadata=metadata).msg_type == expected

    def test_to_dict_keeps_metadata(self):
        d = Message(thread_id="t", content="x", metadata={"a": 1}).to_dict()
        assert d["metadata"] == {"a": 1}
        assert isinstance(d["created_at"], str)
