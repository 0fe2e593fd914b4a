"""Typed events delivered by a voice session to the gateway."""

from dataclasses import dataclass

from gateway.session import ConversationStatus


@dataclass(frozen=True)
class VoiceStatusEvent:
    """The provider moved to a new conversational status."""

    status: ConversationStatus


@dataclass(frozen=True)
class VoiceAudioEvent:
    """Encoded audio produced by the model."""

    data: bytes


@dataclass(frozen=True)
class VoiceErrorEvent:
    """A provider error; the session may or may not survive it."""

    message: str


@dataclass(frozen=True)
class VoiceClosedEvent:
    """The session ended. Always the last event on the channel."""

    reason: str


VoiceEvent = VoiceStatusEvent | VoiceAudioEvent | VoiceErrorEvent | VoiceClosedEvent
