"""
Output formatting for threads and messages (text and JSON).
"""

from __future__ import annotations

import json
from typing import List, Optional

from aiboard.types import Message, Thread, format_timestamp


def _preview(text: str, limit: Optional[int]) -> str:
    """Single-line preview, truncated to *limit* characters (None = full)."""
    if limit is None:
        return text
    flat = " ".join(text.split())
    if len(flat) <= limit:
        return flat
    return flat[:limit] + "…"


def format_message_text(msg: Message, preview_chars: Optional[int] = None) -> str:
    sender = msg.sender or "-"
    source = f" [{msg.source}]" if msg.source else ""
    return (
        f"[{format_timestamp(msg.created_at)}] {msg.short_id} "
        f"({msg.role}) {sender}{source}: {_preview(msg.content, preview_chars)}"
    )


def format_messages_text(
    messages: List[Message], preview_chars: Optional[int] = None,
) -> str:
    return "\n".join(format_message_text(m, preview_chars) for m in messages)


def format_thread_text(thread: Thread) -> str:
    return "\t".join([
        thread.short_id,
        thread.name or "-",
        thread.status,
        thread.phase or "-",
        thread.title,
        format_timestamp(thread.updated_at),
    ])


def format_threads_text(threads: List[Thread]) -> str:
    return "\n".join(format_thread_text(t) for t in threads)


def format_thread_detail(thread: Thread) -> str:
    """Multi-line view of one thread."""
    lines = [
        f"ID:       {thread.id}",
        f"Title:    {thread.title}",
        f"Name:     {thread.name or '(none)'}",
        f"Status:   {thread.status}",
        f"Phase:    {thread.phase or '(none)'}",
        f"Created:  {format_timestamp(thread.created_at)}",
        f"Updated:  {format_timestamp(thread.updated_at)}",
    ]
    if thread.source_url:
        lines.append(f"Source:   {thread.source_url}")
    return "\n".join(lines)


def to_json(objs) -> str:
    """JSON for a Thread/Message or a list of them."""
    if isinstance(objs, (Thread, Message)):
        payload = objs.to_dict()
    else:
        payload = [o.to_dict() for o in objs]
    return json.dumps(payload, indent=2, ensure_ascii=False)
