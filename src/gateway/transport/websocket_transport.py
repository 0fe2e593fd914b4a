"""WebSocket transport implementation.

Accepts browser connections on the configured path and hands each one to
the gateway as a ``WebSocketConnection``.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from http import HTTPStatus
from typing import Any
from urllib.parse import urlsplit

import websockets
from websockets.asyncio.server import ServerConnection
from websockets.http11 import Request, Response
from websockets.protocol import State

from gateway.errors import TransportError
from gateway.transport.base import ClientConnection, Transport
from gateway.transport.websocket_protocol import ServerMessage, encode_server_message

logger = logging.getLogger(__name__)


def new_connection_id() -> str:
    """Generate an opaque connection identifier."""
    return f"conn_{uuid.uuid4().hex[:12]}"


class WebSocketConnection(ClientConnection):
    """WebSocket-backed client connection."""

    def __init__(self, websocket: ServerConnection, connection_id: str) -> None:
        """Initialize WebSocket connection.

        Args:
            websocket: WebSocket connection
            connection_id: Unique connection identifier
        """
        self._websocket = websocket
        self._connection_id = connection_id
        self._connected = True
        self._done = asyncio.Event()

        logger.info(
            "WebSocket connection initialized",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

    @property
    def connection_id(self) -> str:
        """Get unique connection identifier."""
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        """Check if the connection is still open."""
        return self._connected and self._websocket.state == State.OPEN

    async def send_message(self, message: ServerMessage) -> bool:
        """Send a server message to the client."""
        if not self.is_connected:
            return False

        try:
            await self._websocket.send(encode_server_message(message))
            return True
        except websockets.exceptions.ConnectionClosed:
            self._connected = False
            return False
        except Exception as e:
            logger.error(
                "Failed to send message",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )
            return False

    async def receive(self) -> AsyncIterator[str | bytes]:
        """Yield inbound frames until the client disconnects."""
        try:
            async for raw_message in self._websocket:
                yield raw_message
        except websockets.exceptions.ConnectionClosedError as e:
            logger.info(
                "WebSocket connection dropped",
                extra={"connection_id": self._connection_id, "code": e.rcvd.code if e.rcvd else None},
            )
        except OSError as e:
            raise TransportError(f"Connection {self._connection_id} failed: {e}") from e
        finally:
            self._connected = False

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the WebSocket and release the server handler."""
        try:
            if self._websocket.state == State.OPEN:
                await self._websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.warning(
                "Error during connection close",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )
        finally:
            self._connected = False
            self._done.set()

    async def wait_done(self) -> None:
        """Wait until the gateway has finished with this connection."""
        await self._done.wait()


class WebSocketTransport(Transport):
    """WebSocket transport server.

    Manages WebSocket server lifecycle and queues a ``WebSocketConnection``
    for each upgrade on the configured path. Other paths get a 404.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8080,
        path: str = "/ws",
        max_message_bytes: int = 2**20,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port
            path: Request path accepted for upgrades
            max_message_bytes: Maximum inbound message size
        """
        self._host = host
        self._port = port
        self._path = path
        self._max_message_bytes = max_message_bytes
        self._server: Any = None  # websockets.Server type
        self._running = False
        self._connection_queue: asyncio.Queue[WebSocketConnection] = asyncio.Queue()

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "path": path},
        )

    @property
    def transport_type(self) -> str:
        """Transport type identifier."""
        return "websocket"

    @property
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        return self._running

    @property
    def port(self) -> int:
        """Bound port (resolves port 0 after start)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info(
            "Starting WebSocket server", extra={"host": self._host, "port": self._port}
        )

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                process_request=self._process_request,
                max_size=self._max_message_bytes,
            )
            self._running = True

            logger.info(
                "WebSocket server started",
                extra={"host": self._host, "port": self.port, "path": self._path},
            )

        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

    async def stop(self) -> None:
        """Stop the WebSocket server, closing all open connections."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")

        self._running = False

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_connection(self) -> ClientConnection:
        """Block until a new client connects.

        Raises:
            RuntimeError: If the transport is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")

        return await self._connection_queue.get()

    def _process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        if urlsplit(request.path).path != self._path:
            logger.debug("Rejected upgrade on unknown path", extra={"path": request.path})
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle one upgraded WebSocket for its whole lifetime.

        Args:
            websocket: WebSocket connection
        """
        connection = WebSocketConnection(websocket, new_connection_id())

        logger.info(
            "New WebSocket connection",
            extra={"connection_id": connection.connection_id, "remote": websocket.remote_address},
        )

        await self._connection_queue.put(connection)

        # The server closes the socket when this handler returns
        try:
            await connection.wait_done()
        finally:
            logger.info(
                "WebSocket connection closed",
                extra={"connection_id": connection.connection_id},
            )
