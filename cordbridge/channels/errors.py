"""Delivery errors for outbound messages.

The Discord transport raises these so callers can tell a transient failure
from one that will never succeed.
"""


class OutboundDeliveryError(RuntimeError):
    """Base class for outbound delivery errors."""


class TemporaryDeliveryError(OutboundDeliveryError):
    """A transient failure (network, reconnect, rate limit)."""


class PermanentDeliveryError(OutboundDeliveryError):
    """A permanent failure (unknown channel, missing permissions)."""
