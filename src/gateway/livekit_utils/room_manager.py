"""LiveKit room management for conversation sessions.

Allocates one room per conversation, mints the participant JWT, and deletes
the room on release. With LiveKit disabled, rooms are tracked locally and
the token is a development placeholder.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta

import aiohttp
from livekit import api
from livekit.api import AccessToken, VideoGrants
from livekit.api.room_service import RoomService

from gateway.config import LiveKitConfig
from gateway.errors import UpstreamFailure

logger = logging.getLogger(__name__)

DEV_TOKEN = "demo_token"


@dataclass(frozen=True)
class RoomHandle:
    """Allocated room and the token a participant uses to join it."""

    session_id: str
    room_name: str
    token: str


class LiveKitRoomManager:
    """Manages LiveKit room lifecycle and authentication."""

    def __init__(self, config: LiveKitConfig) -> None:
        """Initialize room manager with LiveKit configuration.

        Args:
            config: LiveKit server configuration
        """
        self.config = config
        self._session: aiohttp.ClientSession | None = None
        self._room_service: RoomService | None = None
        self._rooms: dict[str, RoomHandle] = {}
        self._lock = asyncio.Lock()
        self._healthy = True

        if config.enabled and not config.has_credentials:
            logger.warning("LiveKit credentials not configured. Some features may not work.")

    @property
    def remote_enabled(self) -> bool:
        """True when rooms are created on a LiveKit server."""
        return self.config.enabled and self.config.has_credentials

    async def _ensure_session(self) -> RoomService:
        """Ensure aiohttp session and room service are initialized."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._room_service = None

        if self._room_service is None:
            self._room_service = RoomService(
                self._session,
                self.config.url,
                self.config.api_key,
                self.config.api_secret,
            )

        return self._room_service

    async def close(self) -> None:
        """Close aiohttp session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self._room_service = None

    def generate_session_id(self) -> str:
        """Generate unique room session id: ``lk_{timestamp}_{random}``."""
        return f"lk_{int(time.time() * 1000)}_{secrets.token_hex(4)}"

    def room_name_for(self, session_id: str) -> str:
        """Room name derived from the session id."""
        return f"{self.config.room_prefix}_{session_id}"

    def create_access_token(self, room_name: str, participant_identity: str) -> str:
        """Generate JWT access token for client authentication.

        Args:
            room_name: Name of the room to grant access to
            participant_identity: Unique identifier for the participant

        Returns:
            JWT token string, or the development placeholder without credentials
        """
        if not self.config.has_credentials:
            return DEV_TOKEN

        token = AccessToken(self.config.api_key, self.config.api_secret)
        token.with_identity(participant_identity)
        token.with_name(participant_identity)
        token.with_grants(
            VideoGrants(
                room_join=True,
                room=room_name,
                can_publish=True,
                can_subscribe=True,
                can_publish_data=True,
            )
        )
        token.with_ttl(timedelta(hours=self.config.token_ttl_hours))

        return token.to_jwt()

    async def allocate(self) -> RoomHandle:
        """Allocate a room for one conversation.

        Returns:
            Handle with room name and participant token

        Raises:
            UpstreamFailure: If the LiveKit server rejects room creation
        """
        session_id = self.generate_session_id()
        room_name = self.room_name_for(session_id)

        if self.remote_enabled:
            try:
                service = await self._ensure_session()
                await service.create_room(
                    api.CreateRoomRequest(
                        name=room_name,
                        empty_timeout=self.config.empty_timeout_seconds,
                    )
                )
            except Exception as e:
                self._healthy = False
                logger.error(
                    "Failed to create LiveKit session",
                    extra={"room_name": room_name, "error": str(e)},
                )
                raise UpstreamFailure(
                    "room", f"Failed to create LiveKit room '{room_name}': {e}"
                ) from e
            self._healthy = True

        handle = RoomHandle(
            session_id=session_id,
            room_name=room_name,
            token=self.create_access_token(room_name, session_id),
        )
        async with self._lock:
            self._rooms[session_id] = handle

        logger.info(
            "LiveKit session created",
            extra={"session_id": session_id, "room_name": room_name, "remote": self.remote_enabled},
        )
        return handle

    async def release(self, handle: RoomHandle) -> None:
        """Release a room. Releasing an unknown or released room is a no-op.

        Raises:
            UpstreamFailure: If the LiveKit server rejects room deletion
        """
        async with self._lock:
            known = self._rooms.pop(handle.session_id, None)

        if known is None:
            logger.debug(
                "Release requested for inactive LiveKit session",
                extra={"session_id": handle.session_id},
            )
            return

        if self.remote_enabled:
            try:
                service = await self._ensure_session()
                await service.delete_room(api.DeleteRoomRequest(room=handle.room_name))
            except Exception as e:
                self._healthy = False
                raise UpstreamFailure(
                    "room", f"Failed to delete LiveKit room '{handle.room_name}': {e}"
                ) from e

        logger.info(
            "LiveKit session ended",
            extra={"session_id": handle.session_id, "room_name": handle.room_name},
        )

    def get(self, session_id: str) -> RoomHandle | None:
        """Look up an allocated room."""
        return self._rooms.get(session_id)

    def is_healthy(self) -> bool:
        """False after the most recent remote call failed."""
        return self._healthy

    def active_session_count(self) -> int:
        """Number of allocated rooms."""
        return len(self._rooms)
