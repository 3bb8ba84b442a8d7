"""Utility functions for cordbridge."""

from cordbridge.utils.helpers import best_effort, ensure_dir, get_data_path

__all__ = ["best_effort", "ensure_dir", "get_data_path"]
