"""Reconnecting WebSocket client for the chat service."""
from .reconnect import (
    ChatClient,
    CredentialRevokedError,
    ReconnectExhaustedError,
    ReconnectPolicy,
)

__all__ = [
    "ChatClient",
    "CredentialRevokedError",
    "ReconnectExhaustedError",
    "ReconnectPolicy",
]
