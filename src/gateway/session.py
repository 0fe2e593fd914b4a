"""Conversation session model and per-connection state machine.

Defines the connection lifecycle states, the user-visible conversation
status values, and the session record kept for every conversation.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gateway.livekit_utils.room_manager import RoomHandle
    from gateway.voice.base import VoiceSession

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection state machine states.

    State Transitions:
    - IDLE → STARTING (on start_conversation)
    - STARTING → STREAMING (both remote sessions allocated)
    - STARTING → IDLE (capacity or upstream failure, rolled back)
    - STREAMING → STOPPING (on stop_conversation or provider loss)
    - STOPPING → IDLE (teardown complete)
    - * → CLOSED (on disconnect)

    States:
    - IDLE: Connected, no conversation
    - STARTING: Remote sessions being allocated
    - STREAMING: Audio flowing in both directions
    - STOPPING: Teardown in progress
    - CLOSED: Connection gone, no further transitions
    """

    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    STOPPING = "stopping"
    CLOSED = "closed"


VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.IDLE: {ConnectionState.STARTING, ConnectionState.CLOSED},
    ConnectionState.STARTING: {
        ConnectionState.STREAMING,
        ConnectionState.IDLE,
        ConnectionState.STOPPING,
        ConnectionState.CLOSED,
    },
    ConnectionState.STREAMING: {ConnectionState.STOPPING, ConnectionState.CLOSED},
    ConnectionState.STOPPING: {ConnectionState.IDLE, ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),  # Terminal state
}


class ConversationStatus(Enum):
    """Status values reported to the owning connection."""

    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"


class SessionStatus(Enum):
    """Lifecycle of a stored session record."""

    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDED = "ended"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class SessionRecord:
    """Stored metadata for one conversation.

    Records are immutable; the store replaces them on update.
    """

    connection_id: str
    room_session_id: str
    voice_session_id: str | None = None
    status: SessionStatus = SessionStatus.CONNECTING
    participant_count: int = 1
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=_utcnow)
    ended_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        """True until the record is marked ended."""
        return self.status != SessionStatus.ENDED

    def ended(self) -> "SessionRecord":
        """Return a copy marked ended now."""
        return replace(self, status=SessionStatus.ENDED, ended_at=_utcnow())


@dataclass
class ConversationSession:
    """Live remote resources bound to one connection."""

    connection_id: str
    record: SessionRecord
    room: "RoomHandle"
    voice: "VoiceSession"

    @property
    def session_id(self) -> str:
        """Identifier reported to the client (the voice session id)."""
        return self.voice.session_id


class ConnectionStateMachine:
    """Validated state holder for a single connection."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.state = ConnectionState.IDLE

    def can_transition(self, new_state: ConnectionState) -> bool:
        """Check whether ``new_state`` is reachable from the current state."""
        return new_state in VALID_TRANSITIONS.get(self.state, set())

    def transition(self, new_state: ConnectionState) -> None:
        """Transition connection to a new state with validation.

        Args:
            new_state: Target state

        Raises:
            ValueError: If transition is invalid
        """
        if not self.can_transition(new_state):
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state

        logger.info(
            "Connection state transition",
            extra={
                "connection_id": self.connection_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    @property
    def is_closed(self) -> bool:
        """True once the connection has gone away."""
        return self.state == ConnectionState.CLOSED
