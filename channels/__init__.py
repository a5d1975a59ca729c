"""Transports that deliver outbound messages on connected channels."""
from channels.base import (
    ChannelTransport,
    TransportRegistry,
    TransportError,
    CircuitOpenError,
    NoTransportError,
    CircuitBreaker,
    Media,
)
from channels.mock import MockTransport
from channels.http_gateway import HttpGatewayTransport

__all__ = [
    "ChannelTransport", "TransportRegistry", "TransportError",
    "CircuitOpenError", "NoTransportError", "CircuitBreaker", "Media",
    "MockTransport", "HttpGatewayTransport",
]
