"""
Connection lifecycle of the agent gateway socket.

Transitions (owned by GatewayClient):
    DISCONNECTED        -> CONNECTING           connect() requested
    CONNECTING          -> CONNECTED            handshake acknowledged ok
    CONNECTING|CONNECTED -> RECONNECT_SCHEDULED socket error/close, reconnect enabled
    RECONNECT_SCHEDULED -> CONNECTING           backoff timer fired
    any                 -> DISCONNECTED         close()
"""
from enum import Enum


class ConnectionState(str, Enum):
    """Gateway connection status, independent of any session state."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECT_SCHEDULED = "RECONNECT_SCHEDULED"
