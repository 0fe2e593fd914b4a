"""In-memory session record store.

Keeps session metadata for the lifetime of the process. Records are lost on
restart.
"""

import asyncio
import logging
from typing import Any, Protocol

from gateway.session import SessionRecord, SessionStatus

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    """Keyed store of session records."""

    async def create(self, **fields: Any) -> SessionRecord: ...

    async def get(self, session_id: str) -> SessionRecord | None: ...

    async def mark_ended(self, session_id: str) -> SessionRecord | None: ...

    async def list_active(self) -> list[SessionRecord]: ...

    async def active_count(self) -> int: ...


class InMemorySessionStore:
    """Session store backed by a dict guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, **fields: Any) -> SessionRecord:
        """Create and store a new record.

        Args:
            **fields: ``SessionRecord`` constructor fields

        Returns:
            The stored record
        """
        record = SessionRecord(**fields)
        async with self._lock:
            self._records[record.id] = record

        logger.debug(
            "Session record created",
            extra={"record_id": record.id, "status": record.status.value},
        )
        return record

    async def get(self, session_id: str) -> SessionRecord | None:
        """Look up a record by id."""
        return self._records.get(session_id)

    async def mark_ended(self, session_id: str) -> SessionRecord | None:
        """Mark a record ended.

        Ending an already-ended record keeps its original end timestamp.

        Returns:
            The updated record, or None if no such record exists
        """
        async with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            if record.status != SessionStatus.ENDED:
                record = record.ended()
                self._records[session_id] = record
            return record

    async def list_active(self) -> list[SessionRecord]:
        """Return every record that is connecting or active."""
        return [record for record in self._records.values() if record.is_active]

    async def active_count(self) -> int:
        """Return the number of non-ended records."""
        return len(await self.list_active())
