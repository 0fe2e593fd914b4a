"""WebSocket message protocol definitions.

Defines Pydantic models for WebSocket message serialization/deserialization.
Messages are JSON-encoded text frames with camelCase keys on the wire.
"""

import base64
import json
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from gateway.errors import ProtocolError
from gateway.session import ConversationStatus


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StartConversationMessage(_WireModel):
    """Client → Server: begin a conversation."""

    type: Literal["start_conversation"] = "start_conversation"
    timestamp: float | None = Field(default=None, description="Client clock, ms since epoch")


class StopConversationMessage(_WireModel):
    """Client → Server: end the current conversation."""

    type: Literal["stop_conversation"] = "stop_conversation"
    timestamp: float | None = Field(default=None, description="Client clock, ms since epoch")


class AudioDataMessage(_WireModel):
    """Client → Server: one chunk of microphone audio.

    ``audioData`` is the PCM byte sequence as a JSON array of 0-255 values
    (16-bit little-endian, mono, 16 kHz).
    """

    type: Literal["audio_data"] = "audio_data"
    audio_data: list[Annotated[int, Field(ge=0, le=255)]] = Field(
        ..., alias="audioData", min_length=1, description="PCM bytes"
    )
    timestamp: float | None = Field(default=None, description="Client clock, ms since epoch")

    def pcm_bytes(self) -> bytes:
        """Audio payload as bytes."""
        return bytes(self.audio_data)


class ConversationStatusMessage(_WireModel):
    """Server → Client: status of the connection's own conversation."""

    type: Literal["conversation_status"] = "conversation_status"
    status: ConversationStatus
    session_id: str | None = Field(default=None, alias="sessionId")


class SystemStatusMessage(_WireModel):
    """Server → Client: system-wide session counts."""

    type: Literal["system_status"] = "system_status"
    active_sessions: int = Field(..., ge=0, alias="activeSessions")
    max_sessions: int = Field(..., ge=1, alias="maxSessions")
    gemini_model: str | None = Field(default=None, alias="geminiModel")
    session_id: str | None = Field(default=None, alias="sessionId")


class AudioResponseMessage(_WireModel):
    """Server → Client: encoded model audio, base64."""

    type: Literal["audio_response"] = "audio_response"
    data: str = Field(..., description="Base64-encoded audio")

    @classmethod
    def from_audio(cls, audio: bytes) -> "AudioResponseMessage":
        """Build from raw audio bytes."""
        return cls(data=base64.b64encode(audio).decode("ascii"))


class ErrorMessage(_WireModel):
    """Server → Client: error notification."""

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")


# Union type for all client → server messages
ClientMessage = Annotated[
    StartConversationMessage | StopConversationMessage | AudioDataMessage,
    Field(discriminator="type"),
]

# Union type for all server → client messages
ServerMessage = (
    ConversationStatusMessage | SystemStatusMessage | AudioResponseMessage | ErrorMessage
)

_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Decode one inbound text frame.

    Args:
        raw: JSON text

    Returns:
        Typed client message

    Raises:
        ProtocolError: If the frame is not JSON, has an unknown type, or
            fails validation
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    try:
        return _client_message_adapter.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(
            f"Invalid '{data.get('type')}' message: {e.error_count()} validation error(s)"
        ) from e


def encode_server_message(message: ServerMessage) -> str:
    """Encode an outbound message with wire (camelCase) keys."""
    return message.model_dump_json(by_alias=True, exclude_none=True)
