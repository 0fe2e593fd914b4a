"""Gemini Live conversational-audio client.

Opens native-audio Live API sessions, streams 16 kHz PCM in through a
bounded per-session queue, and translates server messages into voice
events:

- setup complete, turn complete, interruption → ``listening``
- model turn carrying audio → audio event, then ``speaking``
- model turn without audio → ``thinking``
"""

import asyncio
import logging
import uuid
from contextlib import AsyncExitStack
from typing import Any

from google import genai
from google.genai import types

from gateway.config import GeminiConfig
from gateway.errors import InactiveSession, UpstreamFailure
from gateway.session import ConversationStatus
from gateway.voice.base import VoiceServiceClient, VoiceSession
from gateway.voice.events import VoiceAudioEvent, VoiceClosedEvent, VoiceErrorEvent

logger = logging.getLogger(__name__)


class GeminiLiveSession(VoiceSession):
    """Open Live API connection plus its reader and writer tasks."""

    def __init__(
        self,
        session_id: str,
        connection: Any,
        exit_stack: AsyncExitStack,
        send_queue_size: int,
    ) -> None:
        super().__init__(session_id)
        self.connection = connection
        self.exit_stack = exit_stack
        self.outbound: asyncio.Queue[bytes] = asyncio.Queue(maxsize=send_queue_size)
        self.tasks: list[asyncio.Task[None]] = []
        self.finished = False


class GeminiLiveClient(VoiceServiceClient):
    """Voice service client backed by the google-genai Live API."""

    def __init__(self, config: GeminiConfig, client: genai.Client | None = None) -> None:
        """Initialize client.

        Args:
            config: Gemini configuration
            client: Pre-built genai client (tests inject a mock)

        Raises:
            ValueError: If no client is given and no API key is configured
        """
        self.config = config

        if client is None:
            if not config.api_key:
                raise ValueError(
                    "Gemini API key not found. "
                    "Please set GEMINI_API_KEY or GOOGLE_API_KEY environment variable."
                )
            client = genai.Client(api_key=config.api_key)

        self._client = client
        self._sessions: dict[str, GeminiLiveSession] = {}
        self._healthy = True
        self._mime_type = f"audio/pcm;rate={config.input_sample_rate}"

    def _live_config(self, system_prompt: str) -> types.LiveConnectConfig:
        return types.LiveConnectConfig(
            response_modalities=[types.Modality.AUDIO],
            system_instruction=types.Content(parts=[types.Part(text=system_prompt)]),
            temperature=self.config.temperature,
        )

    async def open(self, system_prompt: str) -> VoiceSession:
        """Open a Live API session.

        ``connect`` completes the setup handshake before returning, so the
        session is announced as ``listening`` right away.

        Raises:
            UpstreamFailure: If the connection or setup fails
        """
        session_id = f"gemini_{uuid.uuid4().hex[:12]}"
        exit_stack = AsyncExitStack()

        try:
            connection = await exit_stack.enter_async_context(
                self._client.aio.live.connect(
                    model=self.config.model,
                    config=self._live_config(system_prompt),
                )
            )
        except Exception as e:
            self._healthy = False
            logger.error(
                "Failed to start Gemini Live session",
                extra={"session_id": session_id, "error": str(e)},
            )
            raise UpstreamFailure("voice", f"Failed to start Gemini Live session: {e}") from e

        self._healthy = True
        session = GeminiLiveSession(
            session_id, connection, exit_stack, self.config.send_queue_size
        )
        self._sessions[session_id] = session

        logger.info(
            "Gemini Live session opened",
            extra={"session_id": session_id, "model": self.config.model},
        )

        session.emit_status(ConversationStatus.LISTENING)
        session.tasks = [
            asyncio.create_task(self._receive_loop(session)),
            asyncio.create_task(self._send_loop(session)),
        ]
        return session

    def send(self, session: VoiceSession, frame: bytes) -> bool:
        """Queue one audio frame for the writer task.

        Raises:
            InactiveSession: If the session is closed or unknown
        """
        live = self._sessions.get(session.session_id)
        if live is None or not live.is_active:
            raise InactiveSession(f"Voice session {session.session_id} is not active")

        try:
            live.outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.debug(
                "Voice send queue full, dropping frame",
                extra={"session_id": session.session_id, "size": len(frame)},
            )
            return False
        return True

    async def close(self, session: VoiceSession) -> None:
        """Close a session. Unknown or already-closed sessions are ignored."""
        live = self._sessions.get(session.session_id)
        if live is None:
            logger.debug(
                "Close requested for inactive voice session",
                extra={"session_id": session.session_id},
            )
            return
        await self._finish(live, reason="closed")

    def is_healthy(self) -> bool:
        """False after the most recent connect attempt failed."""
        return self._healthy

    def active_session_count(self) -> int:
        """Number of open Live sessions."""
        return len(self._sessions)

    async def _finish(self, session: GeminiLiveSession, reason: str) -> None:
        """Tear down a session once, from whichever side noticed first."""
        if session.finished:
            return
        session.finished = True
        session.mark_inactive()
        self._sessions.pop(session.session_id, None)

        current = asyncio.current_task()
        others = [task for task in session.tasks if task is not current]
        for task in others:
            task.cancel()
        await asyncio.gather(*others, return_exceptions=True)

        try:
            await session.exit_stack.aclose()
        except Exception as e:
            logger.warning(
                "Error closing Gemini Live session",
                extra={"session_id": session.session_id, "error": str(e)},
            )

        session.emit(VoiceClosedEvent(reason=reason))
        logger.info(
            "Gemini Live session closed",
            extra={"session_id": session.session_id, "reason": reason},
        )

    async def _send_loop(self, session: GeminiLiveSession) -> None:
        while True:
            frame = await session.outbound.get()
            try:
                await session.connection.send_realtime_input(
                    audio=types.Blob(data=frame, mime_type=self._mime_type)
                )
            except Exception as e:
                logger.error(
                    "Failed to send audio to Gemini",
                    extra={"session_id": session.session_id, "error": str(e)},
                )
                session.emit(VoiceErrorEvent(message=f"Failed to send audio: {e}"))
                await self._finish(session, reason="send failed")
                return

    async def _receive_loop(self, session: GeminiLiveSession) -> None:
        reason = "provider closed the session"
        try:
            while session.is_active:
                # receive() ends after each completed turn
                received = False
                async for message in session.connection.receive():
                    received = True
                    self._handle_message(session, message)
                if not received:
                    break
        except Exception as e:
            logger.error(
                "Gemini Live session error",
                extra={"session_id": session.session_id, "error": str(e)},
            )
            session.emit(VoiceErrorEvent(message=str(e)))
            reason = "error"

        await self._finish(session, reason=reason)

    def _handle_message(self, session: GeminiLiveSession, message: types.LiveServerMessage) -> None:
        if message.setup_complete is not None:
            session.emit_status(ConversationStatus.LISTENING)

        if message.go_away is not None:
            logger.warning(
                "Gemini Live session will be terminated by server",
                extra={"session_id": session.session_id, "time_left": message.go_away.time_left},
            )

        content = message.server_content
        if content is None:
            return

        if content.interrupted:
            session.emit_status(ConversationStatus.LISTENING)
        elif content.model_turn is not None:
            audio = message.data
            if audio:
                session.emit(VoiceAudioEvent(data=audio))
                session.emit_status(ConversationStatus.SPEAKING)
            else:
                session.emit_status(ConversationStatus.THINKING)

        if content.turn_complete:
            session.emit_status(ConversationStatus.LISTENING)
