"""Persistence gateway for chat rooms and messages.

The messaging core only talks to storage through the narrow :class:`ChatStore`
interface. :class:`DuckDBChatStore` is the bundled implementation, backed by
DuckDB, a fast embedded database. Like the rest of the core it assumes a
single event loop: the DuckDB connection is NOT thread-safe.

Database Schema:
    chats table:
        - id: Deterministic room ID (see make_room_id)
        - buyer_id / seller_id: The two parties, unique as a pair
        - last_message / last_message_at: Conversation preview
        - unread_buyer / unread_seller: Per-party unread counters
        - is_active: False once a party closes the chat
        - created_at: Creation time (UTC)

    messages table:
        - id: Message UUID
        - room_id: Owning room
        - sender_id / sender_role: Who sent it
        - recipient_id / recipient_role: Addressee (NULL = both parties)
        - type / content / attachment: Payload (attachment as JSON)
        - is_read / read_at: Read receipt state
        - created_at / expires_at: Timestamps (UTC), expires_at drives retention
        - client_message_id: Optional client idempotency token

Usage:
    store = DuckDBChatStore.get_instance(db_path=":memory:")
    room = await store.get_or_create_chat("buyer-1", "seller-1")
    message = await store.create_message(Message(...))
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional

import duckdb

from .errors import PersistenceError
from .schemas import (
    Attachment,
    ChatRoom,
    ChatSummaryPatch,
    Message,
    MessageType,
    Pagination,
    Role,
    UnreadCount,
    make_room_id,
    utcnow,
)

logger = logging.getLogger(__name__)


class ChatStore(ABC):
    """Abstract persistence gateway for chats and messages.

    Every method raises :class:`PersistenceError` on storage failure; callers
    must not assume any partial write happened.
    """

    @abstractmethod
    async def create_message(self, message: Message) -> Message:
        """Persist a new message and return it as stored."""

    @abstractmethod
    async def find_messages_by_room(
        self, room_id: str, pagination: Optional[Pagination] = None
    ) -> List[Message]:
        """Return a page of unexpired messages, oldest first."""

    @abstractmethod
    async def update_chat_summary(self, room_id: str, patch: ChatSummaryPatch) -> ChatRoom:
        """Apply a partial update to a room and return the updated summary."""

    @abstractmethod
    async def mark_messages_read(self, room_id: str, role: Role) -> int:
        """Mark unread messages addressed to ``role`` as read. Returns the count."""

    @abstractmethod
    async def get_chat(self, room_id: str) -> Optional[ChatRoom]:
        """Return the room or None."""

    @abstractmethod
    async def find_chat(self, buyer_id: str, seller_id: str) -> Optional[ChatRoom]:
        """Return the room of a buyer/seller pair, or None."""

    @abstractmethod
    async def get_or_create_chat(self, buyer_id: str, seller_id: str) -> ChatRoom:
        """Return the single room for the pair, creating it on first use."""

    @abstractmethod
    async def list_chats_for_user(
        self, user_id: str, active_only: bool = True
    ) -> List[ChatRoom]:
        """Rooms where the user is buyer or seller, most recent first."""

    @abstractmethod
    async def delete_message(self, message_id: str) -> None:
        """Remove a message (compensation for a failed send)."""

    @abstractmethod
    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete messages past their expiry. Returns the count."""

    def close(self) -> None:
        """Release resources. No-op by default."""


_CHAT_COLUMNS = (
    "id, buyer_id, seller_id, last_message, last_message_at, "
    "unread_buyer, unread_seller, is_active, created_at"
)

_MESSAGE_COLUMNS = (
    "id, room_id, sender_id, sender_role, recipient_id, recipient_role, type, "
    "content, attachment, is_read, read_at, created_at, expires_at, client_message_id"
)

_UNREAD_COLUMN = {Role.BUYER: "unread_buyer", Role.SELLER: "unread_seller"}


class DuckDBChatStore(ChatStore):
    """Singleton chat store backed by DuckDB.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["DuckDBChatStore"] = None
    _db_path: str = "marketchat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file, or ":memory:".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "DuckDBChatStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and drop the singleton. Primarily used for testing."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables if they don't exist (idempotent)."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chats (
                id VARCHAR PRIMARY KEY,
                buyer_id VARCHAR NOT NULL,
                seller_id VARCHAR NOT NULL,
                last_message VARCHAR,
                last_message_at TIMESTAMP,
                unread_buyer INTEGER NOT NULL DEFAULT 0,
                unread_seller INTEGER NOT NULL DEFAULT 0,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMP NOT NULL,
                UNIQUE (buyer_id, seller_id)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id VARCHAR PRIMARY KEY,
                room_id VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                sender_role VARCHAR NOT NULL,
                recipient_id VARCHAR,
                recipient_role VARCHAR,
                type VARCHAR NOT NULL,
                content VARCHAR,
                attachment VARCHAR,
                is_read BOOLEAN NOT NULL DEFAULT FALSE,
                read_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL,
                expires_at TIMESTAMP,
                client_message_id VARCHAR
            )
        """)

    def _run(self, sql: str, params: Optional[list] = None) -> duckdb.DuckDBPyConnection:
        try:
            return self._get_connection().execute(sql, params or [])
        except duckdb.Error as e:
            logger.error(f"[Store] Query failed: {e}")
            raise PersistenceError(f"Chat store unavailable: {e}") from e

    # =========================================================================
    # Row conversion
    # =========================================================================

    @staticmethod
    def _row_to_chat(row: Any) -> ChatRoom:
        return ChatRoom(
            id=row[0],
            buyerId=row[1],
            sellerId=row[2],
            lastMessage=row[3] or "",
            lastMessageAt=row[4],
            unreadCount=UnreadCount(buyer=row[5], seller=row[6]),
            isActive=row[7],
            createdAt=row[8],
        )

    @staticmethod
    def _row_to_message(row: Any) -> Message:
        return Message(
            id=row[0],
            roomId=row[1],
            senderId=row[2],
            senderRole=Role(row[3]),
            recipientId=row[4],
            recipientRole=Role(row[5]) if row[5] else None,
            type=MessageType(row[6]),
            content=row[7] or "",
            attachment=Attachment.model_validate_json(row[8]) if row[8] else None,
            isRead=row[9],
            readAt=row[10],
            createdAt=row[11],
            expiresAt=row[12],
            clientMessageId=row[13],
        )

    # =========================================================================
    # Messages
    # =========================================================================

    async def create_message(self, message: Message) -> Message:
        self._run(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                message.id,
                message.roomId,
                message.senderId,
                message.senderRole.value,
                message.recipientId,
                message.recipientRole.value if message.recipientRole else None,
                message.type.value,
                message.content,
                message.attachment.model_dump_json() if message.attachment else None,
                message.isRead,
                message.readAt,
                message.createdAt,
                message.expiresAt,
                message.clientMessageId,
            ],
        )
        return message

    async def find_messages_by_room(
        self, room_id: str, pagination: Optional[Pagination] = None
    ) -> List[Message]:
        pagination = pagination or Pagination()
        sql = (
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE room_id = ? AND (expires_at IS NULL OR expires_at > ?)"
        )
        params: list = [room_id, utcnow()]
        if pagination.before is not None:
            sql += " AND created_at < ?"
            params.append(pagination.before)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(pagination.limit)

        rows = self._run(sql, params).fetchall()
        # Newest page fetched first, returned oldest first
        return [self._row_to_message(row) for row in reversed(rows)]

    async def mark_messages_read(self, room_id: str, role: Role) -> int:
        where = (
            "room_id = ? AND is_read = FALSE "
            "AND (recipient_role = ? OR recipient_role IS NULL)"
        )
        params = [room_id, role.value]
        count = self._run(f"SELECT count(*) FROM messages WHERE {where}", params).fetchone()[0]
        if count:
            self._run(
                f"UPDATE messages SET is_read = TRUE, read_at = ? WHERE {where}",
                [utcnow(), *params],
            )
        return count

    async def delete_message(self, message_id: str) -> None:
        self._run("DELETE FROM messages WHERE id = ?", [message_id])

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        where = "expires_at IS NOT NULL AND expires_at <= ?"
        count = self._run(f"SELECT count(*) FROM messages WHERE {where}", [now]).fetchone()[0]
        if count:
            self._run(f"DELETE FROM messages WHERE {where}", [now])
            logger.info(f"[Store] Purged {count} expired messages")
        return count

    # =========================================================================
    # Chats
    # =========================================================================

    async def get_chat(self, room_id: str) -> Optional[ChatRoom]:
        row = self._run(
            f"SELECT {_CHAT_COLUMNS} FROM chats WHERE id = ?", [room_id]
        ).fetchone()
        return self._row_to_chat(row) if row else None

    async def find_chat(self, buyer_id: str, seller_id: str) -> Optional[ChatRoom]:
        row = self._run(
            f"SELECT {_CHAT_COLUMNS} FROM chats WHERE buyer_id = ? AND seller_id = ?",
            [buyer_id, seller_id],
        ).fetchone()
        return self._row_to_chat(row) if row else None

    async def get_or_create_chat(self, buyer_id: str, seller_id: str) -> ChatRoom:
        existing = await self.find_chat(buyer_id, seller_id)
        if existing is not None:
            return existing

        room_id = make_room_id(buyer_id, seller_id)
        self._run(
            "INSERT INTO chats (id, buyer_id, seller_id, last_message, created_at) "
            "VALUES (?, ?, ?, '', ?)",
            [room_id, buyer_id, seller_id, utcnow()],
        )
        room = await self.get_chat(room_id)
        if room is None or (room.buyerId, room.sellerId) != (buyer_id, seller_id):
            raise PersistenceError(f"Chat {room_id} does not belong to {buyer_id}/{seller_id}")
        logger.info(f"[Store] Created chat {room_id}")
        return room

    async def update_chat_summary(self, room_id: str, patch: ChatSummaryPatch) -> ChatRoom:
        assignments: List[str] = []
        params: list = []

        if patch.lastMessage is not None:
            assignments.append("last_message = ?")
            params.append(patch.lastMessage)
        if patch.lastMessageAt is not None:
            assignments.append("last_message_at = ?")
            params.append(patch.lastMessageAt)
        if patch.isActive is not None:
            assignments.append("is_active = ?")
            params.append(patch.isActive)
        for role in patch.incrementUnread:
            column = _UNREAD_COLUMN.get(role)
            if column:
                assignments.append(f"{column} = {column} + 1")
        if patch.resetUnread is not None and patch.resetUnread in _UNREAD_COLUMN:
            assignments.append(f"{_UNREAD_COLUMN[patch.resetUnread]} = 0")

        if assignments:
            self._run(
                f"UPDATE chats SET {', '.join(assignments)} WHERE id = ?",
                [*params, room_id],
            )

        room = await self.get_chat(room_id)
        if room is None:
            raise PersistenceError(f"Chat {room_id} not found")
        return room

    async def list_chats_for_user(
        self, user_id: str, active_only: bool = True
    ) -> List[ChatRoom]:
        sql = f"SELECT {_CHAT_COLUMNS} FROM chats WHERE (buyer_id = ? OR seller_id = ?)"
        if active_only:
            sql += " AND is_active = TRUE"
        sql += " ORDER BY last_message_at DESC NULLS LAST, created_at DESC"
        rows = self._run(sql, [user_id, user_id]).fetchall()
        return [self._row_to_chat(row) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
