"""Session persistence."""

from cordbridge.sessions.store import SavedSession, SessionRecord, SessionStore

__all__ = ["SavedSession", "SessionRecord", "SessionStore"]
