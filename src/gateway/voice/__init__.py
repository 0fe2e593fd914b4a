"""Conversational-audio provider clients."""

from gateway.voice.base import VoiceServiceClient, VoiceSession
from gateway.voice.events import (
    VoiceAudioEvent,
    VoiceClosedEvent,
    VoiceErrorEvent,
    VoiceEvent,
    VoiceStatusEvent,
)

__all__ = [
    "VoiceAudioEvent",
    "VoiceClosedEvent",
    "VoiceErrorEvent",
    "VoiceEvent",
    "VoiceServiceClient",
    "VoiceSession",
    "VoiceStatusEvent",
]
