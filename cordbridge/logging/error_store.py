"""Captured error log served by the diagnostics API.

A Loguru sink at ERROR level keeps the most recent records in memory and,
when a path is given, appends them to a JSONL file that is reloaded on the
next start.
"""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger


@dataclass
class ErrorRecord:
    ts: str
    level: str
    message: str
    where: str
    channel_id: str | None = None
    exception: str | None = None

    @classmethod
    def from_loguru(cls, record: dict[str, Any]) -> ErrorRecord:
        when = record.get("time")
        exc = record.get("exception")
        extra = record.get("extra") or {}
        return cls(
            ts=when.isoformat() if isinstance(when, datetime) else str(when),
            level=str(record["level"].name) if record.get("level") else "ERROR",
            message=str(record.get("message", "")),
            where=f"{record.get('name') or '?'}:{record.get('function') or '?'}:{record.get('line') or '?'}",
            channel_id=extra.get("channel_id"),
            exception=str(exc) if exc else None,
        )


class ErrorStore:
    """Bounded, thread-safe list of error records, newest last."""

    def __init__(self, path: Path | None = None, max_items: int = 500):
        self.path = path.expanduser() if path else None
        self.max_items = max(50, int(max_items))
        self._lock = threading.Lock()
        self._items: list[ErrorRecord] = []
        self._load_tail()

    def _load_tail(self) -> None:
        if not self.path or not self.path.exists():
            return
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()[-self.max_items:]
        except OSError as e:
            logger.warning(f"Could not read error log {self.path}: {e}")
            return
        loaded = []
        for line in lines:
            try:
                loaded.append(ErrorRecord(**json.loads(line)))
            except (json.JSONDecodeError, TypeError):
                continue
        with self._lock:
            self._items = loaded

    def add(self, rec: ErrorRecord) -> None:
        with self._lock:
            self._items.append(rec)
            del self._items[: -self.max_items]
        if self.path:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(asdict(rec), ensure_ascii=True) + "\n")
            except OSError:
                # A sink must never raise back into the logger
                return

    def get(self, limit: int = 200) -> list[dict[str, Any]]:
        """Most recent records first."""
        n = max(1, min(int(limit), self.max_items))
        with self._lock:
            items = self._items[-n:]
        return [asdict(r) for r in reversed(items)]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
        if self.path:
            self.path.unlink(missing_ok=True)


_STORE: ErrorStore | None = None
_SINK_ID: int | None = None


def init_error_store(path: Path | None = None, max_items: int = 500) -> ErrorStore:
    """Create the global store and attach its Loguru sink (idempotent)."""
    global _STORE, _SINK_ID
    if _STORE is None:
        _STORE = ErrorStore(path=path, max_items=max_items)

    if _SINK_ID is None:
        store = _STORE

        def _sink(message) -> None:
            try:
                store.add(ErrorRecord.from_loguru(message.record))
            except (KeyError, TypeError, ValueError):
                return

        _SINK_ID = logger.add(_sink, level="ERROR", backtrace=True, diagnose=False)
    return _STORE


def reset_error_store() -> None:
    """Detach the sink and forget the store."""
    global _STORE, _SINK_ID
    if _SINK_ID is not None:
        logger.remove(_SINK_ID)
    _STORE = None
    _SINK_ID = None


def get_errors(limit: int = 200) -> list[dict[str, Any]]:
    if _STORE is None:
        return []
    return _STORE.get(limit=limit)


def clear_errors() -> None:
    if _STORE is not None:
        _STORE.clear()
