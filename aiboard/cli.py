"""
aiboard CLI — threads and messages for agents that talk to each other

Commands:
    aiboard thread create "title" [--name N]          — new thread → id on stdout
    aiboard thread list [--status open|closed|all]    — list threads
    aiboard thread show|close|reopen|delete <id>      — short ids accepted
    aiboard thread set-phase <id> <phase|none>
    aiboard message post --thread <id> [--content T]  — stdin if no --content
    aiboard message read [--thread <id>] [--limit N]  — thread or latest overall
    aiboard message list [--limit N]                  — latest across threads
    aiboard message search "query" [--thread <id>]
    aiboard message update <id> --content T
    aiboard message mentions <name> [--thread <id>] [--count]
    aiboard cleanup age <days> | thread <id> | session <id>
    aiboard stats

Environment variables:
    AIBOARD_DB        Path to SQLite database
    AIBOARD_DATA_DIR  Directory of the default database (aiboard.db)
    AIBOARD_CONFIG    Path to a JSON config file

Precedence (invariant):
    CLI --flag  >  AIBOARD_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including empty results)
    1  Operational error (not found, ambiguous id, invalid input)
    2  Internal failure (database error, unexpected exception)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Optional

from aiboard.board import Board
from aiboard.config import BoardConfig, load_config
from aiboard.errors import AiboardError, InvalidInputError
from aiboard.formatting import (
    format_messages_text,
    format_thread_detail,
    format_threads_text,
    to_json,
)
from aiboard.types import parse_status, parse_timestamp

logger = logging.getLogger(__name__)


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    """Parse string env var with fallback."""
    return os.environ.get(name) or default


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_config(args: Optional[argparse.Namespace] = None) -> BoardConfig:
    """Resolve config: CLI --config > AIBOARD_CONFIG > compiled defaults."""
    path = getattr(args, "config", None) if args else None
    return load_config(path or _env_str("AIBOARD_CONFIG"))


def _resolve_db(
    args: Optional[argparse.Namespace], config: BoardConfig,
) -> str:
    """Resolve database path: CLI --db > AIBOARD_DB > config store.db_path."""
    if args and getattr(args, "db", None):
        return args.db
    return _env_str("AIBOARD_DB", config.store.db_path)


def _open_board(args: argparse.Namespace) -> Board:
    """Open the Board. Creates the DB and parent dirs if needed."""
    config = _resolve_config(args)
    return Board.open(_resolve_db(args, config), config)


def _preview_chars(args: argparse.Namespace, board: Board) -> Optional[int]:
    if getattr(args, "full", False) or getattr(args, "json", False):
        return None
    return board.config.read.preview_chars


def _parse_ts(value: Optional[str]):
    return parse_timestamp(value) if value else None


def _read_stdin(max_bytes: int) -> str:
    """Read message content from stdin (bounded, UTF-8)."""
    data = sys.stdin.buffer.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise InvalidInputError(f"input exceeds {max_bytes} byte limit")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidInputError(f"input is not valid UTF-8: {exc}") from exc


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_messages(args, board, messages) -> None:
    if getattr(args, "json", False):
        print(to_json(messages))
        return
    if not messages:
        _info("No messages.")
        return
    print(format_messages_text(messages, _preview_chars(args, board)))


# ===========================================================================
# thread commands
# ===========================================================================


def cmd_thread_create(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        thread = board.create_thread(args.title, name=args.name)
        if getattr(args, "json", False):
            print(to_json(thread))
        else:
            print(thread.id)


def cmd_thread_list(args: argparse.Namespace) -> None:
    status = None if args.status == "all" else parse_status(args.status)
    with _open_board(args) as board:
        threads = board.list_threads(status)
        if getattr(args, "json", False):
            print(to_json(threads))
        elif not threads:
            _info("No threads.")
        else:
            print(format_threads_text(threads))


def cmd_thread_show(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        thread = board.get_thread(args.id)
        if getattr(args, "json", False):
            print(to_json(thread))
        else:
            print(format_thread_detail(thread))


def cmd_thread_close(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        full_id = board.close_thread(args.id)
        _info(f"closed thread {full_id[:8]}")


def cmd_thread_reopen(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        full_id = board.reopen_thread(args.id)
        _info(f"reopened thread {full_id[:8]}")


def cmd_thread_set_phase(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        full_id = board.set_phase(args.id, args.phase)
        _info(f"thread {full_id[:8]} phase: {args.phase}")


def cmd_thread_delete(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        count = board.delete_thread(args.id)
        _info(f"deleted thread {args.id} and {count} messages")


# ===========================================================================
# message commands
# ===========================================================================


def cmd_message_post(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        if args.content is not None:
            content = args.content
        else:
            content = _read_stdin(board.config.content.max_content_bytes)
        metadata = None
        if args.metadata is not None:
            try:
                metadata = json.loads(args.metadata)
            except json.JSONDecodeError as exc:
                raise InvalidInputError(f"--metadata must be valid JSON: {exc}") from exc
        msg = board.post(
            args.thread,
            content,
            role=args.role,
            session_id=args.session,
            sender=args.sender,
            metadata=metadata,
            parent_ref=args.parent,
            source=args.source,
            msg_type=args.type,
        )
        if getattr(args, "json", False):
            print(to_json(msg))
        else:
            print(msg.id)


def cmd_message_read(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        messages = board.read(
            args.thread,
            limit=args.limit,
            after=_parse_ts(args.after),
            before=_parse_ts(args.before),
            msg_type=args.type,
            since_checkpoint=args.since_checkpoint,
        )
        _print_messages(args, board, messages)


def cmd_message_list(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        messages = board.read(None, limit=args.limit, msg_type=args.type)
        _print_messages(args, board, messages)


def cmd_message_search(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        messages = board.search(args.query, args.thread)
        logger.debug("search served by %s", board.messages.last_search_strategy)
        _print_messages(args, board, messages)


def cmd_message_update(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        full_id = board.update(args.id, args.content)
        print(full_id)


def cmd_message_mentions(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        if args.count:
            count = board.count_mentions(args.name, args.thread)
            if getattr(args, "json", False):
                print(json.dumps({"target": args.name, "count": count}))
            else:
                print(count)
            return
        messages = board.mentions(args.name, args.thread)
        _print_messages(args, board, messages)


# ===========================================================================
# cleanup commands
# ===========================================================================


def cmd_cleanup_age(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        count = board.cleanup.by_age(args.days)
        _info(f"deleted {count} messages older than {args.days} days")
        if getattr(args, "json", False):
            print(json.dumps({"deleted": count}))


def cmd_cleanup_thread(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        count = board.delete_thread(args.id)
        _info(f"deleted thread {args.id} and {count} messages")
        if getattr(args, "json", False):
            print(json.dumps({"deleted": count}))


def cmd_cleanup_session(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        count = board.cleanup.by_session(args.id)
        _info(f"deleted {count} messages from session {args.id}")
        if getattr(args, "json", False):
            print(json.dumps({"deleted": count}))


# ===========================================================================
# stats
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    with _open_board(args) as board:
        stats = board.stats()
    if getattr(args, "json", False):
        stats["status"] = "ok"
        print(json.dumps(stats, indent=2, ensure_ascii=False))
    else:
        print("Board Statistics")
        print("=" * 40)
        print(f"  Database: {stats['db_path']}")
        print(f"  Schema:   v{stats['schema_version']}")
        print(f"  FTS5:     {'available' if stats['fts5_available'] else 'unavailable'}")
        print(f"  Threads:  {stats['threads']} "
              f"({stats['threads_open']} open, {stats['threads_closed']} closed)")
        print(f"  Messages: {stats['messages']}")


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    # Shared parent with flags that work on all subcommands. SUPPRESS
    # defaults keep subparser defaults from overriding values parsed at the
    # main-parser level (argparse parents quirk).
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help="Path to SQLite database (default: AIBOARD_DB or data dir)",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="Path to JSON config file (default: AIBOARD_CONFIG)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="aiboard",
        description="aiboard — inter-agent threads and conversation log persistence",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- thread ------------------------------------------------------------
    p_thread = sub.add_parser("thread", parents=[_common], help="Manage threads")
    t_sub = p_thread.add_subparsers(dest="action")

    p = t_sub.add_parser("create", parents=[_common], help="Create a thread")
    p.add_argument("title", help="Thread title")
    p.add_argument("--name", default=None, help="Optional unique short name")
    p.set_defaults(func=cmd_thread_create)

    p = t_sub.add_parser("list", parents=[_common], help="List threads")
    p.add_argument(
        "--status", default="all", choices=["open", "closed", "all"],
        help="Filter by status (default: all)",
    )
    p.set_defaults(func=cmd_thread_list)

    for name, func, helptext in (
        ("show", cmd_thread_show, "Show thread details"),
        ("close", cmd_thread_close, "Close a thread"),
        ("reopen", cmd_thread_reopen, "Reopen a closed thread"),
        ("delete", cmd_thread_delete, "Delete a thread and its messages"),
    ):
        p = t_sub.add_parser(name, parents=[_common], help=helptext)
        p.add_argument("id", help="Thread ID (short prefix allowed)")
        p.set_defaults(func=func)

    p = t_sub.add_parser("set-phase", parents=[_common], help="Set thread phase")
    p.add_argument("id", help="Thread ID (short prefix allowed)")
    p.add_argument("phase", help="planning|implementing|reviewing|done|none")
    p.set_defaults(func=cmd_thread_set_phase)

    # -- message -----------------------------------------------------------
    p_msg = sub.add_parser("message", parents=[_common], help="Manage messages")
    m_sub = p_msg.add_subparsers(dest="action")

    p = m_sub.add_parser("post", parents=[_common], help="Post a message")
    p.add_argument("--thread", required=True, help="Thread ID (short prefix allowed)")
    p.add_argument("--content", default=None, help="Message content (stdin if omitted)")
    p.add_argument("--role", default="user", help="user|assistant|system|tool (default: user)")
    p.add_argument("--session", default=None, help="Session ID")
    p.add_argument("--sender", default=None, help="Sender name")
    p.add_argument("--parent", default=None, help="Parent message ID")
    p.add_argument("--metadata", default=None, help="Metadata as JSON")
    p.add_argument("--type", default=None, help="Message type (stored as metadata.msg_type)")
    p.add_argument("--source", default=None, help="Provenance tag (default: manual/agent)")
    p.set_defaults(func=cmd_message_post)

    p = m_sub.add_parser("read", parents=[_common], help="Read messages")
    p.add_argument("--thread", default=None, help="Thread ID (latest overall if omitted)")
    p.add_argument("--limit", type=int, default=None, help="Maximum number of messages")
    p.add_argument("--after", default=None, help="Only messages after this time (ISO 8601)")
    p.add_argument("--before", default=None, help="Only messages before this time (ISO 8601)")
    p.add_argument("--type", default=None, help="Filter by message type")
    p.add_argument(
        "--since-checkpoint", action="store_true",
        help="Only messages after the last checkpoint",
    )
    p.add_argument("--full", action="store_true", help="Show full content")
    p.set_defaults(func=cmd_message_read)

    p = m_sub.add_parser("list", parents=[_common], help="Latest messages across threads")
    p.add_argument("--limit", type=int, default=None, help="Maximum number of messages")
    p.add_argument("--type", default=None, help="Filter by message type")
    p.add_argument("--full", action="store_true", help="Show full content")
    p.set_defaults(func=cmd_message_list)

    p = m_sub.add_parser("search", parents=[_common], help="Search messages")
    p.add_argument("query", help="Search text (literal substring)")
    p.add_argument("--thread", default=None, help="Limit to one thread")
    p.add_argument("--full", action="store_true", help="Show full content")
    p.set_defaults(func=cmd_message_search)

    p = m_sub.add_parser("update", parents=[_common], help="Update message content")
    p.add_argument("id", help="Message ID (short prefix allowed)")
    p.add_argument("--content", required=True, help="New content")
    p.set_defaults(func=cmd_message_update)

    p = m_sub.add_parser("mentions", parents=[_common], help="Find @mentions")
    p.add_argument("name", help="Mention target (with or without @)")
    p.add_argument("--thread", default=None, help="Limit to one thread")
    p.add_argument("--count", action="store_true", help="Print only the count")
    p.add_argument("--full", action="store_true", help="Show full content")
    p.set_defaults(func=cmd_message_mentions)

    # -- cleanup -----------------------------------------------------------
    p_clean = sub.add_parser("cleanup", parents=[_common], help="Delete old data")
    c_sub = p_clean.add_subparsers(dest="action")

    p = c_sub.add_parser("age", parents=[_common], help="Delete messages older than N days")
    p.add_argument("days", type=int, help="Number of days")
    p.set_defaults(func=cmd_cleanup_age)

    p = c_sub.add_parser("thread", parents=[_common], help="Delete a thread and its messages")
    p.add_argument("id", help="Thread ID (short prefix allowed)")
    p.set_defaults(func=cmd_cleanup_thread)

    p = c_sub.add_parser("session", parents=[_common], help="Delete all messages of a session")
    p.add_argument("id", help="Session ID")
    p.set_defaults(func=cmd_cleanup_session)

    # -- stats -------------------------------------------------------------
    p = sub.add_parser("stats", parents=[_common], help="Board statistics")
    p.set_defaults(func=cmd_stats)

    return parser


def main(argv=None) -> None:
    """CLI entry point: aiboard <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not getattr(args, "func", None):
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except AiboardError as e:
        _warn(f"Error: {e}")
        sys.exit(e.exit_code)
    except BrokenPipeError:
        # Handle broken pipe gracefully (e.g. aiboard message list | head)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
