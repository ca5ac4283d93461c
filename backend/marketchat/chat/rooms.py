"""Room router: which connections receive events for which chat.

Key features:
    - Membership check on join (buyer/seller party, or admin by policy)
    - Idempotent join/leave
    - Concurrent fan-out with asyncio.gather()
    - FIFO delivery per room (one broadcast at a time per room)
    - Automatic dead connection pruning
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

from .connections import Connection, ConnectionListener, ConnectionManager
from .errors import AuthorizationError
from .schemas import ChatRoom, Role
from .store import ChatStore

logger = logging.getLogger(__name__)


class RoomRouter(ConnectionListener):
    """Maps room IDs to subscribed connection IDs.

    Subscriber sets are insertion-ordered dicts so fan-out order is stable.
    Removing a closed connection from its rooms happens through the
    :class:`ConnectionListener` hook.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        store: ChatStore,
        admin_override: bool = False,
    ) -> None:
        self._connections = connections
        self._store = store
        self.admin_override = admin_override
        # room_id -> {connection_id: None}
        self.subscribers: Dict[str, Dict[str, None]] = {}
        # room_id -> lock serializing broadcasts
        self._locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Authorization
    # =========================================================================

    async def authorize_user(
        self, user_id: str, role: Role, room_id: str
    ) -> Tuple[ChatRoom, Role]:
        """Check that a user may act on a room.

        Returns:
            Tuple of (room, acting role): BUYER/SELLER for parties, ADMIN for
            admins admitted by the override policy.

        Raises:
            AuthorizationError: Unknown room, or the user is not allowed in it.
        """
        room = await self._store.get_chat(room_id)
        if room is None:
            raise AuthorizationError("Access denied to this chat")

        party = room.party_role(user_id)
        if party is not None:
            return room, party
        if role == Role.ADMIN and self.admin_override:
            return room, Role.ADMIN

        logger.warning(f"[Rooms] Unauthorized access to {room_id} by user {user_id}")
        raise AuthorizationError("Access denied to this chat")

    async def authorize(self, connection: Connection, room_id: str) -> Tuple[ChatRoom, Role]:
        return await self.authorize_user(connection.user_id, connection.role, room_id)

    # =========================================================================
    # Subscription
    # =========================================================================

    async def join(self, connection_id: str, room_id: str) -> ChatRoom:
        """Subscribe a connection to a room. Idempotent.

        Raises:
            AuthorizationError: If the connection is unknown or not allowed.
        """
        connection = self._connections.get(connection_id)
        if connection is None:
            raise AuthorizationError("Unknown connection")

        room, _ = await self.authorize(connection, room_id)

        # The connection may have closed while the store lookup was pending.
        if self._connections.get(connection_id) is None:
            raise AuthorizationError("Connection closed")

        self.subscribers.setdefault(room_id, {})[connection_id] = None
        connection.rooms.add(room_id)
        logger.info(
            f"[Rooms] {connection_id} (user {connection.user_id}) joined {room_id}; "
            f"{len(self.subscribers[room_id])} subscriber(s)"
        )
        return room

    def leave(self, connection_id: str, room_id: str) -> bool:
        """Unsubscribe a connection. No-op if it was not subscribed."""
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.rooms.discard(room_id)

        members = self.subscribers.get(room_id)
        if not members or connection_id not in members:
            return False
        del members[connection_id]
        if not members:
            self._drop_room(room_id)
        logger.info(f"[Rooms] {connection_id} left {room_id}")
        return True

    def is_joined(self, connection_id: str, room_id: str) -> bool:
        return connection_id in self.subscribers.get(room_id, {})

    def get_subscribers(self, room_id: str) -> List[str]:
        return list(self.subscribers.get(room_id, {}))

    def rooms_of(self, connection_id: str) -> Set[str]:
        connection = self._connections.get(connection_id)
        return set(connection.rooms) if connection else set()

    def get_room_size(self, room_id: str) -> int:
        """Get the number of subscribed connections in a room."""
        return len(self.subscribers.get(room_id, {}))

    def _drop_room(self, room_id: str) -> None:
        self.subscribers.pop(room_id, None)
        lock = self._locks.get(room_id)
        if lock is not None and not lock.locked():
            del self._locks[room_id]

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def broadcast(
        self,
        room_id: str,
        event: dict,
        exclude_connection_id: Optional[str] = None,
    ) -> int:
        """Deliver an event to every subscriber of a room.

        Broadcasts to the same room are serialized so each subscriber sees
        events in the order they were broadcast. Delivery is best-effort:
        a connection whose send fails is pruned from the room, not retried.

        Args:
            room_id: Room to broadcast to.
            event: JSON-serializable event.
            exclude_connection_id: Optional connection (usually the sender) to skip.

        Returns:
            Number of connections that received the event.
        """
        if not self.subscribers.get(room_id):
            return 0

        lock = self._locks.setdefault(room_id, asyncio.Lock())
        async with lock:
            targets: List[Connection] = []
            stale: List[str] = []
            for connection_id in list(self.subscribers.get(room_id, {})):
                if connection_id == exclude_connection_id:
                    continue
                connection = self._connections.get(connection_id)
                if connection is None:
                    stale.append(connection_id)
                else:
                    targets.append(connection)

            # Send to all connections concurrently
            results = await asyncio.gather(
                *[conn.send(event) for conn in targets],
                return_exceptions=True
            )

            failed = [
                conn.connection_id for conn, success in zip(targets, results)
                if success is not True
            ]
            self._prune(room_id, stale + failed)
            delivered = len(targets) - len(failed)

        # Every subscriber was pruned: release the room lock as well
        if room_id not in self.subscribers:
            self._drop_room(room_id)
        return delivered

    def _prune(self, room_id: str, connection_ids: List[str]) -> None:
        """Remove dead connections from a room."""
        if not connection_ids:
            return
        members = self.subscribers.get(room_id, {})
        for connection_id in connection_ids:
            if connection_id in members:
                del members[connection_id]
                logger.debug(f"Removed dead connection {connection_id} from room {room_id}")
            connection = self._connections.get(connection_id)
            if connection is not None:
                connection.rooms.discard(room_id)
        if not members:
            self._drop_room(room_id)

    # =========================================================================
    # ConnectionListener
    # =========================================================================

    async def on_connection_closed(self, connection: Connection) -> None:
        for room_id in list(connection.rooms):
            members = self.subscribers.get(room_id)
            if members is not None:
                members.pop(connection.connection_id, None)
                if not members:
                    self._drop_room(room_id)
        connection.rooms.clear()
