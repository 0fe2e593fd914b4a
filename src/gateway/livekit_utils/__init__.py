"""LiveKit room provisioning."""

from gateway.livekit_utils.room_manager import LiveKitRoomManager, RoomHandle

__all__ = ["LiveKitRoomManager", "RoomHandle"]
