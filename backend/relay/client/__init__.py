"""Reconnecting chat client for the relay's WebSocket endpoint."""

from .backoff import ReconnectPolicy
from .connection import (
    CONNECTION_ERROR,
    RECONNECT_FAILED,
    SEND_FAILED,
    ChatClient,
    ConnectionState,
    build_ws_url,
)

__all__ = [
    "CONNECTION_ERROR",
    "RECONNECT_FAILED",
    "SEND_FAILED",
    "ChatClient",
    "ConnectionState",
    "ReconnectPolicy",
    "build_ws_url",
]
