"""Chat transports."""

from cordbridge.channels.base import ChatTransport, CommandIntent, InboundMessage, SentMessage

__all__ = ["ChatTransport", "CommandIntent", "InboundMessage", "SentMessage"]
