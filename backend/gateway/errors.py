"""
Gateway error taxonomy.

Raised by GatewayClient; callers decide how to surface them. Turn-level
timeouts are NOT exceptions: the soft bound only notifies and the hard
bound resolves the turn with a fixed reply.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for all gateway client errors."""


class TransportUnavailable(GatewayError):
    """
    No usable connection.

    Conversational callers never see this: submit_turn() converts it into
    the canned offline reply.
    """


class NotConnected(TransportUnavailable):
    """request() was called while the connection state is not CONNECTED."""


class TransportClosed(TransportUnavailable):
    """The socket closed while the request was pending."""


class HandshakeRejected(GatewayError):
    """The gateway answered the connect request with ok=false."""

    def __init__(self, error: Any) -> None:
        super().__init__(f"Connect failed: {error!r}")
        self.error = error


class RequestTimeout(GatewayError):
    """No response arrived within the request bound. Never retried."""

    def __init__(self, request_id: str, method: str) -> None:
        super().__init__(f"Request {request_id} ({method}) timed out")
        self.request_id = request_id
        self.method = method


class GatewayRequestFailed(GatewayError):
    """The gateway answered a request with ok=false."""

    def __init__(self, request_id: str, error: Any) -> None:
        super().__init__(f"Request {request_id} failed: {error!r}")
        self.request_id = request_id
        self.error = error


class ProtocolError(GatewayError):
    """
    Malformed or unexpected envelope.

    The receive loop logs and discards the offending message; the
    connection stays up.
    """
