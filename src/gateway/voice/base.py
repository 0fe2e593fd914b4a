"""Base abstraction for conversational-audio providers.

A provider opens duplex sessions. Audio goes in through ``send`` without
waiting on the network; everything the provider says comes back as an
ordered channel of typed events on the session handle.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from gateway.session import ConversationStatus
from gateway.voice.events import (
    VoiceClosedEvent,
    VoiceEvent,
    VoiceStatusEvent,
)


class VoiceSession:
    """Handle for one open provider session.

    Events are kept in arrival order. Consecutive duplicate statuses are
    collapsed. After ``VoiceClosedEvent`` nothing else is emitted.
    """

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._events: asyncio.Queue[VoiceEvent] = asyncio.Queue()
        self._active = True
        self._closed_emitted = False
        self._last_status: ConversationStatus | None = None

    @property
    def session_id(self) -> str:
        """Provider-side session identifier."""
        return self._session_id

    @property
    def is_active(self) -> bool:
        """True until the session is closed from either side."""
        return self._active

    def mark_inactive(self) -> None:
        """Stop accepting audio."""
        self._active = False

    def emit(self, event: VoiceEvent) -> None:
        """Append an event to the channel."""
        if self._closed_emitted:
            return
        if isinstance(event, VoiceClosedEvent):
            self._closed_emitted = True
            self._active = False
        self._events.put_nowait(event)

    def emit_status(self, status: ConversationStatus) -> None:
        """Emit a status event if it differs from the last one."""
        if status == self._last_status:
            return
        self._last_status = status
        self.emit(VoiceStatusEvent(status=status))

    async def events(self) -> AsyncIterator[VoiceEvent]:
        """Yield events until (and including) the closing event."""
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, VoiceClosedEvent):
                return


class VoiceServiceClient(ABC):
    """Client for a remote conversational-audio provider."""

    @abstractmethod
    async def open(self, system_prompt: str) -> VoiceSession:
        """Open a duplex session.

        Args:
            system_prompt: System instruction for the model

        Returns:
            Session handle whose event channel is already live

        Raises:
            UpstreamFailure: If the provider rejects or fails the session
        """

    @abstractmethod
    def send(self, session: VoiceSession, frame: bytes) -> bool:
        """Queue one PCM frame for delivery without waiting on the network.

        Args:
            session: Target session
            frame: 16-bit little-endian mono PCM

        Returns:
            True if queued, False if dropped because the send queue is full

        Raises:
            InactiveSession: If the session is closed
        """

    @abstractmethod
    async def close(self, session: VoiceSession) -> None:
        """Close a session. Closing twice is a no-op."""

    @abstractmethod
    def is_healthy(self) -> bool:
        """Whether the provider is usable."""

    @abstractmethod
    def active_session_count(self) -> int:
        """Number of sessions currently open."""
