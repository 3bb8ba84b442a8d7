"""Utility functions for cordbridge."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, TypeVar

from loguru import logger

T = TypeVar("T")


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the cordbridge data directory (~/.cordbridge)."""
    return ensure_dir(Path.home() / ".cordbridge")


def timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """Truncate a string to max length, adding suffix if truncated."""
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def safe_filename(name: str) -> str:
    """Convert a string to a safe filename."""
    unsafe = '<>:"/\\|?*'
    for char in unsafe:
        name = name.replace(char, "_")
    name = name.strip().lstrip(".")
    return name or "file"


async def best_effort(action: Awaitable[T], what: str) -> T | None:
    """Await a non-critical side effect, logging and suppressing failures.

    Used for status edits, reactions and typing signals: a missed update is
    not fatal to the invocation, so failures never propagate and are never
    retried. Returns ``None`` when the action failed.
    """
    try:
        return await action
    except Exception as e:
        logger.debug(f"{what} failed: {e}")
        return None
