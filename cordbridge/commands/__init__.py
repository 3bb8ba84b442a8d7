"""Slash command routing."""

from cordbridge.commands.router import BUILTIN_COMMANDS, CommandRouter

__all__ = ["BUILTIN_COMMANDS", "CommandRouter"]
