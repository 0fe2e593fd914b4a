"""Transport layer for gateway client connections.

Provides the connection abstraction, the WebSocket implementation and the
JSON message protocol spoken over it.
"""

from gateway.transport.base import ClientConnection, Transport
from gateway.transport.websocket_transport import (
    WebSocketConnection,
    WebSocketTransport,
)

__all__ = [
    "ClientConnection",
    "Transport",
    "WebSocketConnection",
    "WebSocketTransport",
]
