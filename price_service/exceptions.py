# Exceptions - Error Taxonomy
# Errors raised to callers or reported to the streaming error handler

"""
Exceptions raised or reported by the price service client.

Transport-level failures never escape the streaming layer; they are handed
to the error handler as one of these types. Only caller misuse
(EndpointNotConfiguredError) and HTTP failures (PriceServiceHTTPError) are
raised to the caller.
"""

from typing import Optional


class PriceServiceError(Exception):
    """Base class for all price service client errors."""


class EndpointNotConfiguredError(PriceServiceError):
    """The client was used before a usable endpoint was configured."""


class ConnectionNotReadyError(PriceServiceError):
    """A send gave up waiting for the WebSocket to open."""


class HeartbeatTimeoutError(PriceServiceError):
    """No inbound traffic arrived within the liveness window."""

    def __init__(self, timeout: float):
        super().__init__(f"No inbound activity for {timeout:.1f}s")
        self.timeout = timeout


class MessageParseError(PriceServiceError):
    """An inbound frame could not be decoded or had an unexpected shape."""

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


class ServerResponseError(PriceServiceError):
    """The server answered a request with status "error"."""


class UnsupportedMessageError(PriceServiceError):
    """The server sent a message type this client does not handle."""

    def __init__(self, message_type):
        super().__init__(f"Unsupported message type: {message_type!r}")
        self.message_type = message_type


class PriceServiceHTTPError(PriceServiceError):
    """An HTTP request finished with a non-success status."""

    def __init__(self, status: int, message: str = "", url: str = ""):
        super().__init__(f"HTTP {status} for {url}: {message}".strip())
        self.status = status
        self.message = message
        self.url = url
