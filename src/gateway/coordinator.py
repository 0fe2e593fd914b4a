"""Per-connection conversation coordinator and the process-wide gateway.

Each browser connection gets a ``ConversationCoordinator``. Inbound frames
are read on the connection task; control requests, start results and voice
events are posted to the coordinator's inbox and applied one at a time by a
single coordinator task, which is the only writer of the connection's state.
Audio frames skip the inbox and go straight to the voice client's
non-blocking ``send``.

``SessionGateway`` owns what connections share: the session registry, the
record store, the two remote clients and the set of open connections used
for ``system_status`` fan-out.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from gateway.config import GatewayConfig
from gateway.errors import (
    CapacityExceeded,
    InactiveSession,
    ProtocolError,
    TransportError,
    UpstreamFailure,
)
from gateway.livekit_utils.room_manager import LiveKitRoomManager, RoomHandle
from gateway.metrics import MetricsCollector, get_metrics_collector
from gateway.prompts import get_tutor_prompt
from gateway.registry import SessionRegistry
from gateway.session import (
    ConnectionState,
    ConnectionStateMachine,
    ConversationSession,
    ConversationStatus,
    SessionStatus,
)
from gateway.storage import InMemorySessionStore, SessionStore
from gateway.transport.base import ClientConnection
from gateway.transport.websocket_protocol import (
    AudioDataMessage,
    AudioResponseMessage,
    ConversationStatusMessage,
    ErrorMessage,
    ServerMessage,
    StartConversationMessage,
    StopConversationMessage,
    SystemStatusMessage,
    parse_client_message,
)
from gateway.voice.base import VoiceServiceClient, VoiceSession
from gateway.voice.events import (
    VoiceAudioEvent,
    VoiceClosedEvent,
    VoiceErrorEvent,
    VoiceEvent,
    VoiceStatusEvent,
)

logger = logging.getLogger(__name__)

# close_voice, release_room, end_record, release_slot, broadcast_status
TEARDOWN_STEP_COUNT = 5


# ------------------------------------------------------------------
# Coordinator inbox events
# ------------------------------------------------------------------


@dataclass(frozen=True)
class StartRequested:
    """Client sent start_conversation."""


@dataclass(frozen=True)
class StopRequested:
    """Client sent stop_conversation."""


@dataclass(frozen=True)
class StartSucceeded:
    """Both remote sessions were allocated."""

    session: ConversationSession


@dataclass(frozen=True)
class StartFailed:
    """Allocation failed; partial remote sessions were already released."""

    error: UpstreamFailure


@dataclass(frozen=True)
class VoiceEventReceived:
    """Event from the voice session bound to this connection."""

    session_id: str
    event: VoiceEvent


@dataclass(frozen=True)
class ConnectionLost:
    """The client connection is gone."""


CoordinatorEvent = (
    StartRequested
    | StopRequested
    | StartSucceeded
    | StartFailed
    | VoiceEventReceived
    | ConnectionLost
)


# ------------------------------------------------------------------
# ConversationCoordinator
# ------------------------------------------------------------------


class ConversationCoordinator:
    """State machine driver for one client connection."""

    def __init__(self, connection: ClientConnection, gateway: "SessionGateway") -> None:
        self.connection = connection
        self.gateway = gateway
        self.machine = ConnectionStateMachine(connection.connection_id)
        self.session: ConversationSession | None = None

        self._inbox: asyncio.Queue[CoordinatorEvent] = asyncio.Queue()
        self._start_task: asyncio.Task[None] | None = None
        self._voice_pump: asyncio.Task[None] | None = None
        self._stop_requested = False

    @property
    def connection_id(self) -> str:
        """Owning connection id."""
        return self.connection.connection_id

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self.machine.state

    async def run(self) -> None:
        """Serve the connection until it closes and its resources are released."""
        inbox_task = asyncio.create_task(self._process_inbox())
        try:
            await self._receive_loop()
        except TransportError as e:
            logger.warning(
                "Connection dropped",
                extra={"connection_id": self.connection_id, "error": str(e)},
            )
        except Exception as e:
            logger.error(
                "Error reading from connection",
                extra={"connection_id": self.connection_id, "error": str(e)},
            )
        finally:
            self._inbox.put_nowait(ConnectionLost())
            try:
                await asyncio.shield(inbox_task)
            except asyncio.CancelledError:
                # Remote sessions must be released even when this task is cancelled
                logger.info(
                    "Connection task cancelled, finishing teardown",
                    extra={"connection_id": self.connection_id},
                )
                await inbox_task
                raise
            finally:
                await self.connection.close()

    # === Inbound frames (connection task) ===

    async def _receive_loop(self) -> None:
        async for raw in self.connection.receive():
            if isinstance(raw, bytes):
                self.forward_audio(raw)
                continue

            try:
                message = parse_client_message(raw)
            except ProtocolError as e:
                self.gateway.metrics.inc("protocol_errors_total")
                logger.warning(
                    "Invalid client message",
                    extra={"connection_id": self.connection_id, "error": str(e)},
                )
                await self._send(ErrorMessage(message=e.user_message))
                continue

            if isinstance(message, AudioDataMessage):
                self.forward_audio(message.pcm_bytes())
            elif isinstance(message, StartConversationMessage):
                self._inbox.put_nowait(StartRequested())
            elif isinstance(message, StopConversationMessage):
                self._inbox.put_nowait(StopRequested())

    def forward_audio(self, frame: bytes) -> bool:
        """Hand one PCM frame to the voice service without waiting.

        Frames that arrive without a live session are dropped.

        Returns:
            True if the voice client accepted the frame
        """
        session = self.session
        if session is None or self.machine.state != ConnectionState.STREAMING:
            self.gateway.metrics.inc("audio_frames_dropped_total")
            logger.debug(
                "No session found for audio data",
                extra={"connection_id": self.connection_id, "size": len(frame)},
            )
            return False

        try:
            accepted = self.gateway.voice.send(session.voice, frame)
        except InactiveSession as e:
            self.gateway.metrics.inc("audio_frames_dropped_total")
            logger.debug(
                "Audio for inactive voice session dropped",
                extra={"connection_id": self.connection_id, "error": str(e)},
            )
            return False

        if accepted:
            self.gateway.metrics.inc("audio_frames_forwarded_total")
        else:
            self.gateway.metrics.inc("audio_frames_dropped_total")
        return accepted

    # === Coordinator task ===

    async def _process_inbox(self) -> None:
        while True:
            event = await self._inbox.get()
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception(
                    "Error handling coordinator event",
                    extra={"connection_id": self.connection_id, "event": type(event).__name__},
                )

            if self.machine.is_closed and self._start_task is None:
                return

    async def _dispatch(self, event: CoordinatorEvent) -> None:
        if isinstance(event, StartRequested):
            await self._on_start_requested()
        elif isinstance(event, StopRequested):
            await self._on_stop_requested()
        elif isinstance(event, StartSucceeded):
            await self._on_start_succeeded(event.session)
        elif isinstance(event, StartFailed):
            await self._on_start_failed(event.error)
        elif isinstance(event, VoiceEventReceived):
            await self._on_voice_event(event)
        elif isinstance(event, ConnectionLost):
            await self._on_connection_lost()

    async def _on_start_requested(self) -> None:
        if self.machine.state != ConnectionState.IDLE:
            logger.info(
                "Start ignored, conversation already in progress",
                extra={"connection_id": self.connection_id, "state": self.machine.state.value},
            )
            await self._send(ErrorMessage(message="Conversation already in progress"))
            return

        try:
            await self.gateway.registry.reserve(self.connection_id)
        except CapacityExceeded as e:
            self.gateway.metrics.inc("conversations_rejected_total")
            await self._send(ErrorMessage(message=e.user_message))
            return

        self.gateway.update_session_gauge()
        self.machine.transition(ConnectionState.STARTING)
        self._stop_requested = False
        await self._send(ConversationStatusMessage(status=ConversationStatus.CONNECTING))
        self._start_task = asyncio.create_task(self._allocate())

    async def _allocate(self) -> None:
        """Acquire room and voice sessions; post the outcome to the inbox."""
        timeout = self.gateway.config.session.start_timeout_seconds
        started = time.monotonic()
        stage = "room"
        room: RoomHandle | None = None
        voice: VoiceSession | None = None

        try:
            room = await asyncio.wait_for(self.gateway.rooms.allocate(), timeout=timeout)
            stage = "voice"
            voice = await asyncio.wait_for(
                self.gateway.voice.open(self.gateway.system_prompt), timeout=timeout
            )
            stage = "store"
            record = await self.gateway.store.create(
                connection_id=self.connection_id,
                room_session_id=room.session_id,
                voice_session_id=voice.session_id,
                status=SessionStatus.ACTIVE,
            )
        except Exception as e:
            if isinstance(e, UpstreamFailure):
                error = e
            elif isinstance(e, TimeoutError):
                error = UpstreamFailure(stage, f"timed out after {timeout}s")
            else:
                error = UpstreamFailure(stage, str(e))

            logger.error(
                "Failed to start conversation",
                extra={"connection_id": self.connection_id, "stage": stage, "error": str(e)},
            )
            if voice is not None:
                await self._run_step("close_voice", lambda: self.gateway.voice.close(voice))
            if room is not None:
                await self._run_step("release_room", lambda: self.gateway.rooms.release(room))
            self._inbox.put_nowait(StartFailed(error=error))
            return

        self.gateway.metrics.observe("session_start_seconds", time.monotonic() - started)
        self._inbox.put_nowait(
            StartSucceeded(
                session=ConversationSession(
                    connection_id=self.connection_id,
                    record=record,
                    room=room,
                    voice=voice,
                )
            )
        )

    async def _on_start_succeeded(self, session: ConversationSession) -> None:
        self._start_task = None

        if self.machine.is_closed:
            # Connection dropped mid-start: release what was just allocated
            await self._teardown(session)
            return

        if self._stop_requested:
            self.machine.transition(ConnectionState.STOPPING)
            await self._teardown(session)
            self.machine.transition(ConnectionState.IDLE)
            await self._send(ConversationStatusMessage(status=ConversationStatus.IDLE))
            return

        await self.gateway.registry.commit(session)
        self.session = session
        self.machine.transition(ConnectionState.STREAMING)
        self._voice_pump = asyncio.create_task(self._pump_voice_events(session))
        self.gateway.metrics.inc("conversations_started_total")

        logger.info(
            "Session created successfully",
            extra={
                "connection_id": self.connection_id,
                "session_id": session.session_id,
                "room_name": session.room.room_name,
                "record_id": session.record.id,
            },
        )
        await self.gateway.broadcast_system_status()

    async def _on_start_failed(self, error: UpstreamFailure) -> None:
        self._start_task = None
        await self.gateway.registry.release(self.connection_id)
        self.gateway.update_session_gauge()
        self.gateway.metrics.inc("upstream_failures_total")
        await self.gateway.broadcast_system_status()

        if self.machine.is_closed:
            return

        self.machine.transition(ConnectionState.IDLE)
        await self._send(ErrorMessage(message=error.user_message))
        if self._stop_requested:
            await self._send(ConversationStatusMessage(status=ConversationStatus.IDLE))

    async def _on_stop_requested(self) -> None:
        state = self.machine.state

        if state == ConnectionState.STARTING:
            self._stop_requested = True
            return

        if state != ConnectionState.STREAMING:
            logger.info(
                "Stop requested without active session",
                extra={"connection_id": self.connection_id, "state": state.value},
            )
            await self._send(ErrorMessage(message=InactiveSession.user_message))
            return

        self.machine.transition(ConnectionState.STOPPING)
        await self._teardown(self.session)
        self.machine.transition(ConnectionState.IDLE)
        await self._send(ConversationStatusMessage(status=ConversationStatus.IDLE))

    async def _on_connection_lost(self) -> None:
        state = self.machine.state
        if state == ConnectionState.CLOSED:
            return

        self.machine.transition(ConnectionState.CLOSED)
        logger.info(
            "Connection lost",
            extra={"connection_id": self.connection_id, "state": state.value},
        )

        # STARTING finishes in _on_start_succeeded / _on_start_failed
        if state == ConnectionState.STREAMING:
            await self._teardown(self.session)

    async def _on_voice_event(self, received: VoiceEventReceived) -> None:
        session = self.session
        if (
            session is None
            or received.session_id != session.session_id
            or self.machine.state != ConnectionState.STREAMING
        ):
            return

        event = received.event
        if isinstance(event, VoiceStatusEvent):
            logger.debug(
                "Status change",
                extra={"session_id": session.session_id, "status": event.status.value},
            )
            await self._send(
                ConversationStatusMessage(status=event.status, session_id=session.session_id)
            )

        elif isinstance(event, VoiceAudioEvent):
            self.gateway.metrics.inc("audio_responses_total")
            await self._send(AudioResponseMessage.from_audio(event.data))

        elif isinstance(event, VoiceErrorEvent):
            logger.warning(
                "Voice service error",
                extra={"session_id": session.session_id, "error": event.message},
            )
            await self._send(ErrorMessage(message=f"Voice service error: {event.message}"))

        elif isinstance(event, VoiceClosedEvent):
            logger.warning(
                "Voice session ended unexpectedly",
                extra={"session_id": session.session_id, "reason": event.reason},
            )
            await self._send(ErrorMessage(message=f"Voice session ended: {event.reason}"))
            self.machine.transition(ConnectionState.STOPPING)
            await self._teardown(session)
            self.machine.transition(ConnectionState.IDLE)
            await self._send(ConversationStatusMessage(status=ConversationStatus.IDLE))

    async def _pump_voice_events(self, session: ConversationSession) -> None:
        async for event in session.voice.events():
            self._inbox.put_nowait(VoiceEventReceived(session_id=session.session_id, event=event))

    # === Teardown ===

    async def _teardown(self, session: ConversationSession | None) -> None:
        """Release a conversation's resources.

        Steps run in order; each one runs even if an earlier one failed.
        """
        if self._voice_pump is not None:
            self._voice_pump.cancel()
            self._voice_pump = None

        if session is not None:
            await self._run_step("close_voice", lambda: self.gateway.voice.close(session.voice))
            await self._run_step("release_room", lambda: self.gateway.rooms.release(session.room))
            await self._run_step(
                "end_record", lambda: self.gateway.store.mark_ended(session.record.id)
            )
            duration = time.time() - session.record.started_at.timestamp()
            self.gateway.metrics.observe("session_duration_seconds", max(duration, 0.0))

        await self._run_step("release_slot", lambda: self.gateway.registry.release(self.connection_id))
        self.session = None
        self.gateway.update_session_gauge()
        await self._run_step("broadcast_status", self.gateway.broadcast_system_status)

        logger.info(
            "Session cleaned up",
            extra={
                "connection_id": self.connection_id,
                "session_id": session.session_id if session else None,
            },
        )

    async def _run_step(self, name: str, step: Callable[[], Awaitable[Any]]) -> None:
        try:
            await asyncio.wait_for(
                step(), timeout=self.gateway.config.session.teardown_timeout_seconds
            )
        except Exception as e:
            self.gateway.metrics.inc("teardown_errors_total")
            logger.error(
                "Teardown step failed",
                extra={"connection_id": self.connection_id, "step": name, "error": str(e)},
            )

    async def _send(self, message: ServerMessage) -> None:
        await self.connection.send_message(message)


# ------------------------------------------------------------------
# SessionGateway
# ------------------------------------------------------------------


class SessionGateway:
    """Shared state and fan-out for all client connections."""

    def __init__(
        self,
        config: GatewayConfig,
        voice: VoiceServiceClient,
        rooms: LiveKitRoomManager,
        store: SessionStore | None = None,
        metrics: MetricsCollector | None = None,
        system_prompt: str | None = None,
    ) -> None:
        """Initialize gateway.

        Args:
            config: Gateway configuration
            voice: Voice service client
            rooms: Room service client
            store: Session record store (in-memory if omitted)
            metrics: Metrics collector (process-wide if omitted)
            system_prompt: Model instruction (tutor persona if omitted)
        """
        self.config = config
        self.voice = voice
        self.rooms = rooms
        self.store: SessionStore = store if store is not None else InMemorySessionStore()
        self.metrics = metrics if metrics is not None else get_metrics_collector()
        self.system_prompt = system_prompt or get_tutor_prompt()
        self.registry = SessionRegistry(config.session.max_sessions)
        self._coordinators: dict[str, ConversationCoordinator] = {}

    @property
    def connection_count(self) -> int:
        """Number of open client connections."""
        return len(self._coordinators)

    def coordinator(self, connection_id: str) -> ConversationCoordinator | None:
        """Coordinator for an open connection."""
        return self._coordinators.get(connection_id)

    async def handle_connection(self, connection: ClientConnection) -> None:
        """Serve one client connection from connect to teardown."""
        coordinator = ConversationCoordinator(connection, self)
        self._coordinators[connection.connection_id] = coordinator
        self.metrics.set_gauge("connections_active", len(self._coordinators))

        logger.info("WebSocket connected", extra={"connection_id": connection.connection_id})

        try:
            await connection.send_message(self.system_status_message())
            await coordinator.run()
        finally:
            self._coordinators.pop(connection.connection_id, None)
            self.metrics.set_gauge("connections_active", len(self._coordinators))
            logger.info(
                "WebSocket disconnected", extra={"connection_id": connection.connection_id}
            )

    def system_status_message(self) -> SystemStatusMessage:
        """Current system-wide session counts."""
        return SystemStatusMessage(
            active_sessions=self.registry.active_count,
            max_sessions=self.registry.max_sessions,
            gemini_model=self.config.gemini.model,
        )

    async def broadcast_system_status(self) -> None:
        """Send current counts to every open connection."""
        message = self.system_status_message()
        connections = [c.connection for c in self._coordinators.values()]
        await asyncio.gather(*(connection.send_message(message) for connection in connections))

    def update_session_gauge(self) -> None:
        """Mirror the registry size into the sessions_active gauge."""
        self.metrics.set_gauge("sessions_active", self.registry.active_count)

    def health_snapshot(self) -> dict[str, Any]:
        """Status document served on /health."""
        return {
            "status": "healthy",
            "activeSessions": self.registry.active_count,
            "maxSessions": self.registry.max_sessions,
            "geminiModel": self.config.gemini.model,
            "services": {
                "voice": self.voice.is_healthy(),
                "room": self.rooms.is_healthy(),
            },
        }

    async def shutdown(self) -> None:
        """Close every connection; each coordinator tears its session down."""
        coordinators = list(self._coordinators.values())
        logger.info("Closing client connections", extra={"count": len(coordinators)})
        await asyncio.gather(
            *(c.connection.close(code=1001, reason="server shutting down") for c in coordinators),
            return_exceptions=True,
        )
