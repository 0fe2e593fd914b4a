"""Gateway error taxonomy.

Every failure the gateway reasons about is one of these types. The
``user_message`` is what the owning connection sees in an ``error`` frame;
``TransportError`` has none because the channel is already gone.
"""


class GatewayError(Exception):
    """Base class for gateway errors."""

    user_message = "Failed to process message"

    def __init__(self, message: str = "", user_message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class CapacityExceeded(GatewayError):
    """Start rejected because the global session set is full."""

    user_message = "Maximum concurrent sessions reached. Please try again later."

    def __init__(self, active: int, limit: int) -> None:
        super().__init__(f"Session capacity reached ({active}/{limit})")
        self.active = active
        self.limit = limit


class UpstreamFailure(GatewayError):
    """A remote service (voice or room) failed while starting a session."""

    user_message = (
        "Failed to start conversation. Please check your connection and try again."
    )

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service} service failure: {message}")
        self.service = service


class InactiveSession(GatewayError):
    """Operation addressed a session that is not live."""

    user_message = "No active session found"


class ProtocolError(GatewayError):
    """Inbound frame could not be parsed or is not a known message."""

    user_message = "Failed to process message"


class TransportError(GatewayError):
    """The underlying client connection dropped."""

    user_message = ""
