"""Push transport subsystem.

Public API::

    from pushrelay.push import PushMessage, load_push_transport
"""

from pushrelay.push.base import (
    DisabledPushTransport,
    EndpointError,
    PushMessage,
    PushTransport,
    SendReport,
    TransportError,
    stringify_data,
)
from pushrelay.push.circuit_breaker import CircuitBreakerPushTransport
from pushrelay.push.registry import load_push_transport

__all__ = [
    "CircuitBreakerPushTransport",
    "DisabledPushTransport",
    "EndpointError",
    "PushMessage",
    "PushTransport",
    "SendReport",
    "TransportError",
    "load_push_transport",
    "stringify_data",
]
