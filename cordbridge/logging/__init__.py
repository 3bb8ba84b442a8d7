"""Error capture for diagnostics."""

from cordbridge.logging.error_store import clear_errors, get_errors, init_error_store

__all__ = ["clear_errors", "get_errors", "init_error_store"]
