"""Presence and typing tracker.

Online state is driven by the connection registry's first-connect and
last-disconnect transitions, never by individual sockets, so a user with
several devices does not flicker offline. Going offline waits a short grace
delay; a reconnect inside that window cancels the transition entirely.
Status changes are pushed to the other party of every chat the user is in,
to all of their connections, joined to the room or not.

Typing flags expire on their own: a ``typing: true`` that is not followed by
``typing: false`` within the timeout is cleared by the tracker, which then
broadcasts ``isTyping: false`` itself.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple

from .connections import Connection, ConnectionListener, ConnectionManager
from .errors import PersistenceError
from .rooms import RoomRouter
from .schemas import EventType, utcnow
from .store import ChatStore

logger = logging.getLogger(__name__)


@dataclass
class PresenceRecord:
    """Ephemeral presence state for one user.

    Attributes:
        user_id: Owner.
        is_online: True while the user has at least one live connection.
        last_seen: When the user last went offline.
        typing: room_id -> event-loop time at which the typing flag expires.
    """
    user_id: str
    is_online: bool = False
    last_seen: Optional[datetime] = None
    typing: Dict[str, float] = field(default_factory=dict)


class PresenceTracker(ConnectionListener):
    """Maintains online/offline and typing state, decoupled from message content."""

    def __init__(
        self,
        connections: ConnectionManager,
        router: RoomRouter,
        store: ChatStore,
        typing_timeout: float = 5.0,
        grace_period: float = 3.0,
    ) -> None:
        self._connections = connections
        self._router = router
        self._store = store
        self.typing_timeout = typing_timeout
        self.grace_period = grace_period
        self.records: Dict[str, PresenceRecord] = {}
        # user_id -> last offline time, kept after the record is dropped
        self.last_seen: Dict[str, datetime] = {}
        self._offline_timers: Dict[str, asyncio.Task] = {}
        self._typing_timers: Dict[Tuple[str, str], asyncio.Task] = {}

    # =========================================================================
    # Online / offline
    # =========================================================================

    async def set_online(self, user_id: str) -> None:
        """Mark a user online and tell their rooms.

        A pending offline transition is cancelled; if the user never actually
        went offline nothing is broadcast.
        """
        pending = self._offline_timers.pop(user_id, None)
        if pending is not None:
            pending.cancel()

        record = self.records.get(user_id)
        if record is not None and record.is_online:
            logger.debug(f"[Presence] {user_id} reconnected within grace period")
            return

        self.records[user_id] = PresenceRecord(user_id=user_id, is_online=True)
        logger.info(f"[Presence] {user_id} is online")
        await self._broadcast_status(user_id, True, None)

    async def set_offline(self, user_id: str) -> None:
        """Schedule the offline transition after the grace delay."""
        await self._clear_all_typing(user_id)

        if self.grace_period <= 0:
            await self._go_offline(user_id)
            return

        pending = self._offline_timers.pop(user_id, None)
        if pending is not None:
            pending.cancel()
        self._offline_timers[user_id] = asyncio.create_task(
            self._offline_after_grace(user_id)
        )

    async def _offline_after_grace(self, user_id: str) -> None:
        await asyncio.sleep(self.grace_period)
        self._offline_timers.pop(user_id, None)
        await self._go_offline(user_id)

    async def _go_offline(self, user_id: str) -> None:
        record = self.records.pop(user_id, None)
        if record is None or not record.is_online:
            return
        last_seen = utcnow()
        self.last_seen[user_id] = last_seen
        logger.info(f"[Presence] {user_id} is offline")
        await self._broadcast_status(user_id, False, last_seen)

    async def _broadcast_status(
        self, user_id: str, is_online: bool, last_seen: Optional[datetime]
    ) -> None:
        try:
            rooms = await self._store.list_chats_for_user(user_id)
        except PersistenceError as e:
            logger.error(f"[Presence] Could not load rooms for {user_id}: {e}")
            return

        event = {
            "type": EventType.USER_STATUS.value,
            "userId": user_id,
            "isOnline": is_online,
            "lastSeen": last_seen.isoformat() if last_seen else None,
        }
        # Sent to each counterpart directly, whether or not they opened the room
        for room in rooms:
            counterpart = room.sellerId if room.buyerId == user_id else room.buyerId
            await self._connections.send_to_user(counterpart, event)

    def is_online(self, user_id: str) -> bool:
        record = self.records.get(user_id)
        return bool(record and record.is_online)

    def get_record(self, user_id: str) -> Optional[PresenceRecord]:
        return self.records.get(user_id)

    def get_last_seen(self, user_id: str) -> Optional[datetime]:
        return self.last_seen.get(user_id)

    # =========================================================================
    # Typing
    # =========================================================================

    async def set_typing(self, connection: Connection, room_id: str, is_typing: bool) -> None:
        """Start or clear a typing indicator for a room.

        Raises:
            AuthorizationError: If the connection's user may not access the room.
        """
        await self._router.authorize(connection, room_id)

        key = (connection.user_id, room_id)
        timer = self._typing_timers.pop(key, None)
        if timer is not None:
            timer.cancel()

        record = self.records.setdefault(
            connection.user_id,
            PresenceRecord(user_id=connection.user_id, is_online=True),
        )
        if is_typing:
            loop = asyncio.get_running_loop()
            record.typing[room_id] = loop.time() + self.typing_timeout
            self._typing_timers[key] = asyncio.create_task(
                self._expire_typing(connection.user_id, room_id)
            )
        else:
            record.typing.pop(room_id, None)

        await self._router.broadcast(
            room_id,
            self._typing_event(room_id, connection.user_id, is_typing),
            exclude_connection_id=connection.connection_id,
        )

    def is_typing(self, user_id: str, room_id: str) -> bool:
        record = self.records.get(user_id)
        return bool(record and room_id in record.typing)

    async def _expire_typing(self, user_id: str, room_id: str) -> None:
        await asyncio.sleep(self.typing_timeout)
        self._typing_timers.pop((user_id, room_id), None)
        record = self.records.get(user_id)
        if record is not None:
            record.typing.pop(room_id, None)
        logger.debug(f"[Presence] Typing flag for {user_id} in {room_id} expired")
        await self._router.broadcast(room_id, self._typing_event(room_id, user_id, False))

    async def _clear_all_typing(self, user_id: str) -> None:
        record = self.records.get(user_id)
        rooms = list(record.typing) if record else []
        for room_id in rooms:
            timer = self._typing_timers.pop((user_id, room_id), None)
            if timer is not None:
                timer.cancel()
            record.typing.pop(room_id, None)
            await self._router.broadcast(room_id, self._typing_event(room_id, user_id, False))

    @staticmethod
    def _typing_event(room_id: str, user_id: str, is_typing: bool) -> dict:
        return {
            "type": EventType.USER_TYPING.value,
            "roomId": room_id,
            "userId": user_id,
            "isTyping": is_typing,
        }

    # =========================================================================
    # ConnectionListener
    # =========================================================================

    async def on_user_online(self, user_id: str) -> None:
        await self.set_online(user_id)

    async def on_user_offline(self, user_id: str) -> None:
        await self.set_offline(user_id)

    def shutdown(self) -> None:
        """Cancel every pending timer."""
        for task in list(self._offline_timers.values()) + list(self._typing_timers.values()):
            task.cancel()
        self._offline_timers.clear()
        self._typing_timers.clear()
