"""Base transport abstraction for client connections.

Defines the interface the gateway talks to, so connection handling can be
exercised without a real network socket.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from gateway.transport.websocket_protocol import ServerMessage


class ClientConnection(ABC):
    """One duplex channel to a browser client."""

    @abstractmethod
    async def send_message(self, message: ServerMessage) -> bool:
        """Send a message to the client.

        Never raises; a closed or broken channel just returns False.

        Args:
            message: Outbound protocol message

        Returns:
            True if the message was written
        """

    @abstractmethod
    def receive(self) -> AsyncIterator[str | bytes]:
        """Yield inbound frames until the client disconnects.

        Text frames arrive as ``str``, binary frames as ``bytes``. Iteration
        ends normally when the connection closes.

        Raises:
            TransportError: If the underlying channel fails
        """

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the channel. Closing twice is a no-op."""

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Unique connection identifier for logging and tracking."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the connection is still open."""


class Transport(ABC):
    """Server side of a transport.

    Manages the listening socket and hands each accepted client to the
    gateway as a ``ClientConnection``.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the transport server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport server and close open connections."""

    @abstractmethod
    async def accept_connection(self) -> ClientConnection:
        """Block until a new client connects.

        Raises:
            RuntimeError: If the transport is not running
        """

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
