"""
Board Configuration

Configuration dataclasses for aiboard: store, content limits and read
defaults. Includes load_config() for reading a JSON config file with silent
fallback to compiled defaults.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


def default_data_dir() -> Path:
    """Data directory: $AIBOARD_DATA_DIR, else ~/.local/share/aiboard."""
    env = os.environ.get("AIBOARD_DATA_DIR")
    if env:
        return Path(env)
    return Path.home() / ".local" / "share" / "aiboard"


def default_db_path() -> str:
    return str(default_data_dir() / "aiboard.db")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = field(default_factory=default_db_path)
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.busy_timeout_ms",
                      self.busy_timeout_ms, 0, 600000, int)
        return errors


@dataclass
class ContentConfig:
    """Limits applied to message content before it reaches the store."""
    max_content_bytes: int = 1_048_576  # 1 MiB

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "content.max_content_bytes",
                      self.max_content_bytes, 1, 1_048_576, int)
        return errors


@dataclass
class ReadConfig:
    """Defaults for reading and listing messages."""
    default_limit: int = 20
    preview_chars: int = 100

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "read.default_limit",
                      self.default_limit, 1, 100000, int)
        _check_range(errors, "read.preview_chars",
                      self.preview_chars, 10, 100000, int)
        return errors


@dataclass
class BoardConfig:
    """Top-level aiboard configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    content: ContentConfig = field(default_factory=ContentConfig)
    read: ReadConfig = field(default_factory=ReadConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> BoardConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "content" in d:
            kwargs["content"] = ContentConfig(**d["content"])
        if "read" in d:
            kwargs["read"] = ReadConfig(**d["read"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.content.validate())
        errors.extend(self.read.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> BoardConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        BoardConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = BoardConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = BoardConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = BoardConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
