"""Connection registry for authenticated chat sockets.

This module tracks every live transport session and the user that owns it.
A user may hold several connections at once (multi-device); presence is
derived from the per-user connection count, so only the first connect and
the last disconnect are reported to listeners.

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    Registry mutations never span an await, so readers never observe a
    partially-updated set. It is NOT thread-safe for access from multiple threads.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from fastapi import WebSocket

from marketchat.auth.service import TokenVerifier

from .errors import TransientDeliveryFailure
from .schemas import Role, utcnow

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Connection:
    """One live transport session.

    Attributes:
        connection_id: Server-assigned identifier.
        user_id: Owner, fixed for the lifetime of the connection.
        role: Role from the verified token.
        transport: Object exposing ``send_json`` (a Starlette WebSocket in production).
        authenticated_at: When the handshake succeeded (UTC).
        rooms: Room IDs this connection is subscribed to.
    """
    connection_id: str
    user_id: str
    role: Role
    transport: WebSocket
    authenticated_at: datetime = field(default_factory=utcnow)
    rooms: Set[str] = field(default_factory=set)

    async def deliver(self, event: dict) -> None:
        """Write an event to the transport.

        Raises:
            TransientDeliveryFailure: If the transport is closed or broken.
        """
        try:
            await self.transport.send_json(event)
        except Exception as e:
            raise TransientDeliveryFailure(
                f"Failed to send to connection {self.connection_id}: {e}"
            ) from e

    async def send(self, event: dict) -> bool:
        """Send an event with error handling.

        Returns:
            True if successful, False if the transport failed.
        """
        try:
            await self.deliver(event)
            return True
        except TransientDeliveryFailure as e:
            logger.debug(e.message)
            return False


class ConnectionListener:
    """Observer for connection lifecycle transitions.

    Subclasses override the hooks they care about.
    """

    async def on_user_online(self, user_id: str) -> None:
        """The user's first live connection was registered."""

    async def on_user_offline(self, user_id: str) -> None:
        """The user's last live connection was removed."""

    async def on_connection_closed(self, connection: Connection) -> None:
        """A single connection was removed (called before on_user_offline)."""


class ConnectionManager:
    """Registry of ``userId -> live connections``.

    Attributes:
        connections: connection_id -> Connection.
        user_connections: user_id -> set of connection_ids.
    """

    def __init__(self, verifier: TokenVerifier) -> None:
        self._verifier = verifier
        self.connections: Dict[str, Connection] = {}
        self.user_connections: Dict[str, Set[str]] = {}
        self._listeners: List[ConnectionListener] = []

    def add_listener(self, listener: ConnectionListener) -> None:
        self._listeners.append(listener)

    async def connect(self, token: str, transport: WebSocket) -> Connection:
        """Authenticate a handshake and register the connection.

        Args:
            token: Bearer token supplied at connection establishment.
            transport: The accepted transport.

        Returns:
            The registered Connection.

        Raises:
            AuthenticationError: If the identity bridge rejects the token.
                Nothing is registered; the caller closes the transport.
        """
        identity = await self._verifier.verify_token(token)

        connection = Connection(
            connection_id=str(uuid.uuid4()),
            user_id=identity.userId,
            role=identity.role,
            transport=transport,
        )
        self.connections[connection.connection_id] = connection
        user_ids = self.user_connections.setdefault(identity.userId, set())
        first = not user_ids
        user_ids.add(connection.connection_id)

        logger.info(
            f"[Connections] User {identity.userId} ({identity.role.value}) connected "
            f"as {connection.connection_id}; {len(user_ids)} live connection(s)"
        )

        if first:
            for listener in self._listeners:
                await self._notify(listener.on_user_online, identity.userId)
        return connection

    async def disconnect(self, connection_id: str, reason: str = "closed") -> bool:
        """Remove a connection. Safe to call more than once.

        Returns:
            True if the connection was registered, False if already gone.
        """
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return False

        user_ids = self.user_connections.get(connection.user_id, set())
        user_ids.discard(connection_id)
        last = not user_ids
        if last:
            self.user_connections.pop(connection.user_id, None)

        logger.info(
            f"[Connections] {connection_id} of user {connection.user_id} disconnected "
            f"({reason}); {len(user_ids)} live connection(s) left"
        )

        for listener in self._listeners:
            await self._notify(listener.on_connection_closed, connection)
        if last:
            for listener in self._listeners:
                await self._notify(listener.on_user_offline, connection.user_id)
        return True

    async def _notify(self, hook, arg) -> None:
        # A failing listener must not leave the registry half-updated for the others.
        try:
            await hook(arg)
        except Exception as e:
            logger.error(f"[Connections] Listener {hook.__qualname__} failed: {e}")

    def get(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    def lookup(self, user_id: str) -> Set[Connection]:
        """All live connections of a user; an empty set means offline."""
        return {
            self.connections[cid]
            for cid in self.user_connections.get(user_id, set())
            if cid in self.connections
        }

    def is_online(self, user_id: str) -> bool:
        return bool(self.user_connections.get(user_id))

    async def send_to_user(self, user_id: str, event: dict) -> int:
        """Deliver an event to every connection of a user.

        Dead connections are disconnected rather than retried.

        Returns:
            Number of connections that received the event.
        """
        delivered = 0
        for connection in list(self.lookup(user_id)):
            if await connection.send(event):
                delivered += 1
            else:
                await self.disconnect(connection.connection_id, "send_failed")
        return delivered
