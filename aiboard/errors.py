"""
Error types for aiboard.

Every engine failure is an ``AiboardError``. Expected outcomes (unknown id,
ambiguous prefix, bad caller input) get their own subclass so callers can map
them to exit codes without parsing messages.

Exit codes:
    1  Operational error (not found, ambiguous prefix, invalid input)
    2  Internal failure (database error, migration failure)
"""

from __future__ import annotations


class AiboardError(Exception):
    """Base class for all aiboard errors."""

    exit_code = 2


class NotFoundError(AiboardError):
    """A thread or message id (full or short) matched nothing."""

    exit_code = 1

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")


class AmbiguousPrefixError(AiboardError):
    """A short id matched more than one record."""

    exit_code = 1

    def __init__(self, prefix: str, count: int):
        self.prefix = prefix
        self.count = count
        super().__init__(
            f"ambiguous short id '{prefix}': matched {count} records"
        )


class InvalidInputError(AiboardError, ValueError):
    """A caller-supplied value fails a precondition."""

    exit_code = 1


class DatabaseError(AiboardError):
    """Underlying SQLite failure (wraps the native error text)."""


class MigrationError(DatabaseError):
    """A schema migration could not be applied."""
