"""CLI module for cordbridge."""

from cordbridge.cli.commands import app

__all__ = ["app"]
