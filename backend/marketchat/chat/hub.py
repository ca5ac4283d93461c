"""Wiring for the realtime chat core.

A ChatHub owns one instance of each component and connects them:

    ConnectionManager --(listeners)--> RoomRouter, PresenceTracker
    EventDispatcher   --> RoomRouter / MessagePipeline / PresenceTracker
    MessagePipeline   --> ChatStore, RoomRouter, ConnectionManager

Rooms are registered as a listener before presence so a closing connection
has already left its rooms when the offline status is broadcast.
"""
import logging
from typing import Optional

from marketchat.auth.service import TokenVerifier, build_verifier
from marketchat.config import AppConfig, ChatSettings, get_config

from .connections import ConnectionManager
from .dispatch import EventDispatcher
from .pipeline import MessagePipeline
from .presence import PresenceTracker
from .rooms import RoomRouter
from .store import ChatStore, DuckDBChatStore

logger = logging.getLogger(__name__)


class ChatHub:
    """Container for the chat components sharing one store and one verifier."""

    def __init__(
        self,
        verifier: TokenVerifier,
        store: ChatStore,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        self.settings = settings or ChatSettings()
        self.verifier = verifier
        self.store = store
        self.connections = ConnectionManager(verifier)
        self.rooms = RoomRouter(
            self.connections, store, admin_override=self.settings.admin_override
        )
        self.presence = PresenceTracker(
            self.connections,
            self.rooms,
            store,
            typing_timeout=self.settings.typing_timeout_seconds,
            grace_period=self.settings.presence_grace_seconds,
        )
        self.pipeline = MessagePipeline(store, self.connections, self.rooms, self.settings)
        self.dispatcher = EventDispatcher(self)

        self.connections.add_listener(self.rooms)
        self.connections.add_listener(self.presence)

    async def shutdown(self) -> None:
        """Drop every live connection and cancel presence timers."""
        for connection_id in list(self.connections.connections):
            await self.connections.disconnect(connection_id, "shutdown")
        self.presence.shutdown()
        logger.info("[Hub] Chat hub shut down")


def build_hub(config: AppConfig) -> ChatHub:
    """Create a hub from configuration."""
    verifier = build_verifier(config)
    store = DuckDBChatStore.get_instance(config.storage.db_path)
    logger.info(
        "Chat hub ready: auth=%s storage=%s admin_override=%s",
        config.auth.provider,
        config.storage.db_path,
        config.chat.admin_override,
    )
    return ChatHub(verifier, store, config.chat)


_hub: Optional[ChatHub] = None


def get_hub() -> ChatHub:
    """Return the process-wide hub, building it from config on first use."""
    global _hub
    if _hub is None:
        _hub = build_hub(get_config())
    return _hub


def set_hub(hub: Optional[ChatHub]) -> None:
    """Set (or clear) the process-wide hub."""
    global _hub
    _hub = hub
