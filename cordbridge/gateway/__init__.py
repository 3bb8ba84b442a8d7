"""Local diagnostics API."""

from cordbridge.gateway.api import create_gateway_app

__all__ = ["create_gateway_app"]
