"""Error taxonomy for the bridge.

Configuration errors are fatal at startup. Backend errors carry a
``FailureKind`` so the orchestrator can decide whether the stored session
must be dropped before the error is reported.
"""

from enum import Enum


class BridgeError(RuntimeError):
    """Base class for cordbridge errors."""


class ConfigurationError(BridgeError):
    """Missing or invalid configuration. Not recoverable at runtime."""


class ProjectsRootError(ConfigurationError):
    """The projects root directory does not exist or cannot be read."""


class FailureKind(str, Enum):
    """How a failed invocation should be treated."""
    SESSION = "session"  # resume token is unusable; clear it
    BACKEND = "backend"  # plain error; keep the session


class BackendError(BridgeError):
    """The agent backend failed outside of a normal result."""

    def __init__(self, message: str, kind: FailureKind = FailureKind.BACKEND):
        super().__init__(message)
        self.kind = kind


# Substrings the backend uses when a resumed session cannot be continued.
# TODO: drop once the SDK exposes a dedicated error subtype for stale sessions.
_SESSION_ERROR_MARKERS = (
    "session",
    "resume",
    "not found",
    "expired",
    "exited with code",
)


def looks_like_session_error(message: str) -> bool:
    """Best-effort text heuristic for session-related failures."""
    lower = (message or "").lower()
    return any(marker in lower for marker in _SESSION_ERROR_MARKERS)


def classify_failure(error: BaseException | str, *, resumed: bool) -> FailureKind:
    """Decide whether a failure invalidates the channel's stored session.

    Only failures of a resumed invocation can be session failures. A
    structured ``BackendError.kind`` wins over the text heuristic.
    """
    if not resumed:
        return FailureKind.BACKEND
    if isinstance(error, BackendError) and error.kind == FailureKind.SESSION:
        return FailureKind.SESSION
    if looks_like_session_error(str(error)):
        return FailureKind.SESSION
    return FailureKind.BACKEND
