"""Global session set with a fixed concurrency ceiling.

Slots are reserved before any remote allocation starts, so a connection in
STARTING already counts against the ceiling. All mutations go through one
asyncio lock; two concurrent starts can never both take the last slot.
"""

import asyncio
import logging

from gateway.errors import CapacityExceeded
from gateway.session import ConversationSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Connection-keyed registry of reserved and live conversation sessions."""

    def __init__(self, max_sessions: int) -> None:
        """Initialize registry.

        Args:
            max_sessions: Maximum number of concurrent sessions
        """
        if max_sessions < 1:
            raise ValueError(f"max_sessions must be >= 1, got {max_sessions}")

        self.max_sessions = max_sessions
        # None marks a reservation whose remote sessions are still being allocated
        self._slots: dict[str, ConversationSession | None] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._slots

    @property
    def active_count(self) -> int:
        """Number of occupied slots (reserved or live)."""
        return len(self._slots)

    @property
    def is_full(self) -> bool:
        """True when no slot is left."""
        return len(self._slots) >= self.max_sessions

    async def reserve(self, connection_id: str) -> None:
        """Reserve a slot for a connection about to start a conversation.

        Args:
            connection_id: Owning connection

        Raises:
            CapacityExceeded: If every slot is taken
            ValueError: If the connection already holds a slot
        """
        async with self._lock:
            if connection_id in self._slots:
                raise ValueError(f"Connection {connection_id} already holds a session slot")
            if len(self._slots) >= self.max_sessions:
                logger.warning(
                    "Session capacity reached",
                    extra={
                        "connection_id": connection_id,
                        "active_sessions": len(self._slots),
                        "max_sessions": self.max_sessions,
                    },
                )
                raise CapacityExceeded(len(self._slots), self.max_sessions)
            self._slots[connection_id] = None

    async def commit(self, session: ConversationSession) -> None:
        """Attach live remote sessions to a previously reserved slot.

        Raises:
            KeyError: If the connection holds no reservation
        """
        async with self._lock:
            if session.connection_id not in self._slots:
                raise KeyError(f"No reservation for connection {session.connection_id}")
            self._slots[session.connection_id] = session

    async def release(self, connection_id: str) -> ConversationSession | None:
        """Free the slot held by a connection.

        Releasing a connection without a slot is a no-op.

        Returns:
            The live session that occupied the slot, if any
        """
        async with self._lock:
            return self._slots.pop(connection_id, None)
