"""Integration fixtures: a gateway served over a real WebSocket on a free port."""

import asyncio
import json
import socket
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
from websockets.asyncio.client import ClientConnection

from gateway.coordinator import SessionGateway
from gateway.server import accept_loop
from gateway.transport.websocket_transport import WebSocketTransport


def get_free_port() -> int:
    """Get a free TCP port for binding."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


async def receive_until(
    websocket: ClientConnection,
    predicate: Callable[[dict[str, Any]], bool],
    timeout: float = 3.0,
) -> list[dict[str, Any]]:
    """Read messages until one matches; returns everything read, match last."""
    messages: list[dict[str, Any]] = []
    async with asyncio.timeout(timeout):
        while True:
            message = json.loads(await websocket.recv())
            messages.append(message)
            if predicate(message):
                return messages


@pytest.fixture
async def ws_url(gateway: SessionGateway) -> AsyncIterator[str]:
    """Serve the test gateway on an ephemeral port; yields the client URL."""
    transport = WebSocketTransport(host="127.0.0.1", port=0, path="/ws")
    await transport.start()

    tasks: set[asyncio.Task[None]] = set()
    acceptor = asyncio.create_task(accept_loop(transport, gateway, tasks))
    try:
        yield f"ws://127.0.0.1:{transport.port}/ws"
    finally:
        acceptor.cancel()
        await gateway.shutdown()
        if tasks:
            await asyncio.wait(tasks, timeout=5.0)
        await transport.stop()


@pytest.fixture(name="receive_until")
def receive_until_fixture() -> Callable[..., Any]:
    return receive_until


@pytest.fixture(name="free_port")
def free_port_fixture() -> Callable[[], int]:
    return get_free_port
