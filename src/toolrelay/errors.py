class RelayError(Exception):
    """Base class for toolrelay errors."""


class TransportError(RelayError):
    """A transport descriptor is unrecognized or cannot be opened."""


class NotConnectedError(RelayError):
    """An operation was attempted against a server with no active client."""

    def __init__(self, server_id: str):
        super().__init__(f"Server '{server_id}' is not connected")
        self.server_id = server_id


class UpstreamError(RelayError):
    """The model capability failed.

    Args:
        message: Human-readable failure detail.
        status: HTTP status reported by the upstream API, when known.
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ProtocolError(RelayError):
    """A trace entry or tool schema is malformed."""
