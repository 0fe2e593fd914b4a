"""Realtime session gateway for the European Portuguese voice tutor.

Bridges browser WebSocket connections to a Gemini Live voice session and a
LiveKit room, bounded by a global concurrency ceiling.
"""

__version__ = "0.1.0"
