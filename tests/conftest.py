"""Shared fixtures: in-memory connection, voice and room fakes plus a gateway."""

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import pytest

from gateway.config import GatewayConfig
from gateway.coordinator import SessionGateway
from gateway.errors import InactiveSession, UpstreamFailure
from gateway.livekit_utils.room_manager import RoomHandle
from gateway.metrics import MetricsCollector
from gateway.session import ConversationStatus
from gateway.storage import InMemorySessionStore
from gateway.transport.base import ClientConnection
from gateway.transport.websocket_protocol import ServerMessage
from gateway.voice.base import VoiceServiceClient, VoiceSession
from gateway.voice.events import VoiceClosedEvent


class FakeConnection(ClientConnection):
    """Client connection driven from the test body."""

    def __init__(self, connection_id: str) -> None:
        self._connection_id = connection_id
        self._inbound: asyncio.Queue[str | bytes | Exception | None] = asyncio.Queue()
        self._connected = True
        self.sent: list[ServerMessage] = []
        self.close_calls = 0
        self.task: asyncio.Task[None] | None = None

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def send_message(self, message: ServerMessage) -> bool:
        if not self._connected:
            return False
        self.sent.append(message)
        return True

    async def receive(self) -> AsyncIterator[str | bytes]:
        while True:
            frame = await self._inbound.get()
            if frame is None:
                return
            if isinstance(frame, Exception):
                self._connected = False
                raise frame
            yield frame

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls += 1
        if self._connected:
            self._connected = False
            self._inbound.put_nowait(None)

    # Test controls

    def feed(self, message: dict[str, Any] | str | bytes) -> None:
        """Deliver one inbound frame."""
        if isinstance(message, dict):
            message = json.dumps(message)
        self._inbound.put_nowait(message)

    def start(self) -> None:
        self.feed({"type": "start_conversation"})

    def stop(self) -> None:
        self.feed({"type": "stop_conversation"})

    def fail(self, error: Exception) -> None:
        """Make the channel break with ``error``."""
        self._inbound.put_nowait(error)

    def disconnect(self) -> None:
        """Simulate the browser going away."""
        self._connected = False
        self._inbound.put_nowait(None)

    def of_type(self, message_type: str) -> list[ServerMessage]:
        return [m for m in self.sent if m.type == message_type]

    def statuses(self) -> list[str]:
        return [m.status.value for m in self.of_type("conversation_status")]

    def errors(self) -> list[str]:
        return [m.message for m in self.of_type("error")]


class FakeVoiceClient(VoiceServiceClient):
    """Voice provider that records frames and closes on demand."""

    def __init__(self) -> None:
        self.sessions: dict[str, VoiceSession] = {}
        self.opened: list[VoiceSession] = []
        self.closed: list[str] = []
        self.sent: list[bytes] = []
        self.prompts: list[str] = []
        self.fail_open: Exception | None = None
        self.open_gate: asyncio.Event | None = None
        self.accept_frames = True
        self.healthy = True
        self.close_delay = 0.0
        self.closing: list[str] = []

    async def open(self, system_prompt: str) -> VoiceSession:
        self.prompts.append(system_prompt)
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.fail_open is not None:
            raise self.fail_open

        session = VoiceSession(f"voice_{len(self.opened) + 1}")
        self.sessions[session.session_id] = session
        self.opened.append(session)
        session.emit_status(ConversationStatus.LISTENING)
        return session

    def send(self, session: VoiceSession, frame: bytes) -> bool:
        if not session.is_active:
            raise InactiveSession(f"Voice session {session.session_id} is not active")
        if not self.accept_frames:
            return False
        self.sent.append(frame)
        return True

    async def close(self, session: VoiceSession) -> None:
        if self.sessions.pop(session.session_id, None) is None:
            return
        self.closing.append(session.session_id)
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed.append(session.session_id)
        session.emit(VoiceClosedEvent(reason="closed"))

    def end_remotely(self, session: VoiceSession) -> None:
        """Provider drops the session without being asked."""
        self.sessions.pop(session.session_id, None)
        session.emit(VoiceClosedEvent(reason="provider closed the session"))

    def is_healthy(self) -> bool:
        return self.healthy

    def active_session_count(self) -> int:
        return len(self.sessions)


class FakeRoomManager:
    """Room manager stand-in with the ``LiveKitRoomManager`` call surface."""

    remote_enabled = False

    def __init__(self) -> None:
        self.rooms: dict[str, RoomHandle] = {}
        self.allocated: list[RoomHandle] = []
        self.released: list[str] = []
        self.fail_allocate: Exception | None = None
        self.fail_release: Exception | None = None
        self.closed = False

    async def allocate(self) -> RoomHandle:
        if self.fail_allocate is not None:
            raise self.fail_allocate
        session_id = f"lk_test_{len(self.allocated) + 1}"
        handle = RoomHandle(
            session_id=session_id, room_name=f"portuguese_tutor_{session_id}", token="demo_token"
        )
        self.rooms[session_id] = handle
        self.allocated.append(handle)
        return handle

    async def release(self, handle: RoomHandle) -> None:
        if self.rooms.pop(handle.session_id, None) is None:
            return
        self.released.append(handle.session_id)
        if self.fail_release is not None:
            raise self.fail_release

    async def close(self) -> None:
        self.closed = True

    def is_healthy(self) -> bool:
        return True

    def active_session_count(self) -> int:
        return len(self.rooms)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a predicate until it holds (fails the test after a timeout)."""
    return _wait_until


@pytest.fixture
def gateway_config() -> GatewayConfig:
    """Config with short timeouts for fast tests."""
    return GatewayConfig.model_validate(
        {
            "session": {
                "max_sessions": 30,
                "start_timeout_seconds": 1.0,
                "teardown_timeout_seconds": 1.0,
            },
            "gemini": {"model": "gemini-test-model"},
        }
    )


@pytest.fixture
def fake_voice() -> FakeVoiceClient:
    return FakeVoiceClient()


@pytest.fixture
def fake_rooms() -> FakeRoomManager:
    return FakeRoomManager()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def gateway(
    gateway_config: GatewayConfig,
    fake_voice: FakeVoiceClient,
    fake_rooms: FakeRoomManager,
    store: InMemorySessionStore,
    metrics: MetricsCollector,
) -> SessionGateway:
    return SessionGateway(
        gateway_config,
        voice=fake_voice,
        rooms=fake_rooms,  # type: ignore[arg-type]
        store=store,
        metrics=metrics,
    )


@pytest.fixture
async def connect(
    gateway: SessionGateway,
) -> AsyncIterator[Callable[[], Awaitable[FakeConnection]]]:
    """Open fake connections served by the gateway; all are closed at teardown."""
    tasks: list[asyncio.Task[None]] = []
    connections: list[FakeConnection] = []

    async def _connect() -> FakeConnection:
        connection = FakeConnection(f"conn_test_{len(connections) + 1}")
        connections.append(connection)
        connection.task = asyncio.create_task(gateway.handle_connection(connection))
        tasks.append(connection.task)
        await _wait_until(lambda: gateway.coordinator(connection.connection_id) is not None)
        return connection

    yield _connect

    for connection in connections:
        connection.disconnect()
    await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=5.0)


@pytest.fixture
def upstream_failure() -> UpstreamFailure:
    return UpstreamFailure("voice", "Gemini unavailable")
