"""
cordbridge - Discord channels bridged to Claude agent sessions
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("cordbridge")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
__logo__ = "🌉"
