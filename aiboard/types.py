"""
Board Data Model

Threads group messages; messages are short text records with a role, an
optional sender and optional JSON metadata. Instances returned by the stores
are always fresh copies built from rows.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from aiboard.errors import InvalidInputError

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

Role = Literal["user", "assistant", "system", "tool"]
ThreadStatus = Literal["open", "closed"]
ThreadPhase = Literal["planning", "implementing", "reviewing", "done"]

# Valid values for runtime checks
VALID_ROLES: set = {"user", "assistant", "system", "tool"}
VALID_STATUSES: set = {"open", "closed"}
VALID_PHASES: set = {"planning", "implementing", "reviewing", "done"}

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _now_utc() -> datetime:
    """Current UTC time, truncated to the second (persistence precision)."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def _generate_id() -> str:
    """Generate a random 128-bit identifier as a UUID string."""
    return str(uuid.uuid4())


def format_timestamp(dt: datetime) -> str:
    """Render a datetime as the UTC text stored in the database."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(text: str) -> datetime:
    """Parse stored or user-supplied timestamps into aware UTC datetimes.

    Accepts ``YYYY-MM-DD HH:MM:SS``, the ``T``-separated ISO form, fractional
    seconds and explicit offsets. Naive values are taken as UTC.
    """
    try:
        dt = datetime.fromisoformat(text.strip())
    except (ValueError, AttributeError) as exc:
        raise InvalidInputError(f"invalid timestamp: {text!r}") from exc
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_role(value: str) -> str:
    """Parse a role name (case-insensitive)."""
    role = (value or "").strip().lower()
    if role not in VALID_ROLES:
        raise InvalidInputError(f"unknown role: {value}")
    return role


def parse_status(value: str) -> str:
    """Parse a thread status (case-insensitive)."""
    status = (value or "").strip().lower()
    if status not in VALID_STATUSES:
        raise InvalidInputError(f"unknown thread status: {value}")
    return status


def parse_phase(value: Optional[str]) -> Optional[str]:
    """Parse a thread phase; ``None``, ``""`` and ``"none"`` clear it."""
    if value is None:
        return None
    phase = value.strip().lower()
    if phase in ("", "none"):
        return None
    if phase not in VALID_PHASES:
        raise InvalidInputError(f"unknown thread phase: {value}")
    return phase


def _dt_fields_to_str(d: Dict[str, Any]) -> Dict[str, Any]:
    for key in ("created_at", "updated_at"):
        if isinstance(d.get(key), datetime):
            d[key] = d[key].isoformat()
    return d


# ---------------------------------------------------------------------------
# Thread
# ---------------------------------------------------------------------------

@dataclass
class Thread:
    """A named container for an ordered sequence of messages.

    Rules:
    - ``id`` never changes once assigned.
    - ``status`` is informational; writes to closed threads are allowed.
    - ``updated_at >= created_at``.
    """

    title: str = ""
    id: str = field(default_factory=_generate_id)
    name: Optional[str] = None
    source_url: Optional[str] = None
    status: ThreadStatus = "open"
    phase: Optional[ThreadPhase] = None
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: datetime = field(default_factory=_now_utc)

    def __post_init__(self):
        """Validate status, phase and timestamp ordering."""
        if self.status not in VALID_STATUSES:
            raise InvalidInputError(f"unknown thread status: {self.status!r}")
        if self.phase is not None and self.phase not in VALID_PHASES:
            raise InvalidInputError(f"unknown thread phase: {self.phase!r}")
        if self.updated_at < self.created_at:
            raise InvalidInputError(
                f"thread {self.id}: updated_at precedes created_at"
            )

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return _dt_fields_to_str(asdict(self))


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------

@dataclass
class Message:
    """A single timestamped content record belonging to one thread.

    ``metadata`` may be any JSON-serializable value; it is stored verbatim as
    JSON text and comes back equal. Only ``content`` and ``updated_at`` change
    after creation.
    """

    thread_id: str = ""
    content: str = ""
    role: Role = "user"
    id: str = field(default_factory=_generate_id)
    session_id: Optional[str] = None
    sender: Optional[str] = None
    metadata: Any = None
    parent_id: Optional[str] = None
    source: Optional[str] = None
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: datetime = field(default_factory=_now_utc)

    def __post_init__(self):
        """Validate role."""
        if self.role not in VALID_ROLES:
            raise InvalidInputError(f"unknown role: {self.role!r}")

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def msg_type(self) -> Optional[str]:
        """Semantic type stored under ``metadata["msg_type"]``, if any."""
        if isinstance(self.metadata, dict):
            value = self.metadata.get("msg_type")
            return value if isinstance(value, str) else None
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return _dt_fields_to_str(asdict(self))
