"""Message pipeline: the authoritative path for sending a chat message.

Send order is fixed:
    1. Validate membership and payload
    2. Persist the message (read=False)
    3. Update the room summary and the recipient's unread counter
    4. Fan out ``new_message`` to the room and ``chat_updated`` to both parties
    5. Return the persisted message as the sender's acknowledgement

Nothing is broadcast unless steps 2 and 3 succeeded; a failed summary update
deletes the message again so no partial state survives. Failed sends are never
retried here: the client decides, and may pass a ``clientMessageId`` so a
resubmission returns the original message instead of a duplicate.
"""
import logging
from collections import OrderedDict
from typing import Optional, Tuple

from marketchat.config import ChatSettings

from .connections import Connection, ConnectionManager
from .errors import AuthorizationError, PayloadValidationError, PersistenceError
from .rooms import RoomRouter
from .schemas import (
    Attachment,
    ChatRoom,
    ChatSummaryPatch,
    EventType,
    Message,
    MessageType,
    Role,
    VerifiedIdentity,
    utcnow,
)
from .store import ChatStore

logger = logging.getLogger(__name__)

# Length of the last-message preview stored on the room
PREVIEW_LENGTH = 100

SYSTEM_SENDER_ID = "system"


class MessagePipeline:
    """Validates, persists and fans out chat messages."""

    def __init__(
        self,
        store: ChatStore,
        connections: ConnectionManager,
        router: RoomRouter,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        self._store = store
        self._connections = connections
        self._router = router
        self.settings = settings or ChatSettings()
        # (room_id, sender_id, client_message_id) -> Message, LRU ordered
        self._sent: "OrderedDict[Tuple[str, str, str], Message]" = OrderedDict()

    # =========================================================================
    # Send
    # =========================================================================

    async def send(
        self,
        connection: Connection,
        room_id: Optional[str],
        content: str,
        message_type: MessageType = MessageType.TEXT,
        attachment: Optional[Attachment] = None,
        client_message_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
    ) -> Message:
        """Send a message from a joined connection.

        Args:
            connection: The sender's connection.
            room_id: Target room. May be None when ``recipient_id`` is given,
                in which case the buyer->seller room is created on demand and
                the sender is joined to it.
            content: Message text (caption for attachments).
            message_type: text, image or file.
            attachment: Required for image/file messages.
            client_message_id: Optional idempotency token.
            recipient_id: Seller to message when no room exists yet.

        Returns:
            The persisted message.

        Raises:
            AuthorizationError: Sender is not joined to the room.
            PayloadValidationError: Malformed content or attachment.
            PersistenceError: The store failed; nothing was broadcast.
        """
        self._validate(content, message_type, attachment)

        if room_id is None:
            room_id = await self._open_room(connection, recipient_id)

        if not self._router.is_joined(connection.connection_id, room_id):
            raise AuthorizationError("Join the chat before sending messages")

        room, sender_role = await self._router.authorize(connection, room_id)
        return await self._deliver(
            room,
            connection.user_id,
            sender_role,
            content,
            message_type,
            attachment,
            client_message_id,
            exclude_connection_id=connection.connection_id,
        )

    async def send_as(
        self,
        identity: VerifiedIdentity,
        room_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        attachment: Optional[Attachment] = None,
        client_message_id: Optional[str] = None,
    ) -> Message:
        """Send a message for a verified identity that holds no joined socket.

        Used by the REST route. Only the buyer or seller of the room may send;
        the message reaches every subscriber, including the sender's own
        devices.

        Raises:
            AuthorizationError: Caller is not a party of the room.
            PayloadValidationError: Malformed content or attachment.
            PersistenceError: The store failed; nothing was broadcast.
        """
        self._validate(content, message_type, attachment)

        room, sender_role = await self._router.authorize_user(
            identity.userId, identity.role, room_id
        )
        if sender_role == Role.ADMIN:
            raise AuthorizationError("Only chat participants can send messages")

        return await self._deliver(
            room, identity.userId, sender_role, content, message_type, attachment, client_message_id
        )

    async def _deliver(
        self,
        room: ChatRoom,
        sender_id: str,
        sender_role: Role,
        content: str,
        message_type: MessageType,
        attachment: Optional[Attachment],
        client_message_id: Optional[str],
        exclude_connection_id: Optional[str] = None,
    ) -> Message:
        """Persist a validated message, then fan it out."""
        room_id = room.id
        if client_message_id:
            cached = self._sent.get((room_id, sender_id, client_message_id))
            if cached is not None:
                logger.info(f"[Pipeline] Duplicate send {client_message_id} in {room_id} ignored")
                return cached

        recipient_role = self._recipient_role(sender_role)

        now = utcnow()
        message = Message(
            roomId=room_id,
            senderId=sender_id,
            senderRole=sender_role,
            recipientId=room.party_id(recipient_role) if recipient_role else None,
            recipientRole=recipient_role,
            type=message_type,
            content=content,
            attachment=attachment,
            createdAt=now,
            expiresAt=Message.expiry_for(now, self.settings.retention_days),
            clientMessageId=client_message_id,
        )

        room = await self._persist(message, ChatSummaryPatch(
            lastMessage=self._preview(message),
            lastMessageAt=now,
            isActive=True,
            incrementUnread=[recipient_role] if recipient_role else [Role.BUYER, Role.SELLER],
        ))

        if client_message_id:
            self._remember(message)

        logger.info(f"[Pipeline] Message {message.id} from {sender_id} persisted in {room_id}")
        await self._router.broadcast(
            room_id,
            {
                "type": EventType.NEW_MESSAGE.value,
                "roomId": room_id,
                "message": message.model_dump(mode="json"),
            },
            exclude_connection_id=exclude_connection_id,
        )
        await self._push_chat_updated(room)
        return message

    async def post_system_message(self, room_id: str, content: str) -> Message:
        """Post a server-originated notice to a room (e.g. order status changes)."""
        if not content or not content.strip():
            raise PayloadValidationError("System message content is required")

        room = await self._store.get_chat(room_id)
        if room is None:
            raise AuthorizationError("Access denied to this chat")

        now = utcnow()
        message = Message(
            roomId=room_id,
            senderId=SYSTEM_SENDER_ID,
            senderRole=Role.ADMIN,
            type=MessageType.SYSTEM,
            content=content,
            createdAt=now,
            expiresAt=Message.expiry_for(now, self.settings.retention_days),
        )
        room = await self._persist(message, ChatSummaryPatch(
            lastMessage=self._preview(message),
            lastMessageAt=now,
            isActive=True,
            incrementUnread=[Role.BUYER, Role.SELLER],
        ))

        logger.info(f"[Pipeline] System message {message.id} posted to {room_id}")
        await self._router.broadcast(room_id, {
            "type": EventType.NEW_MESSAGE.value,
            "roomId": room_id,
            "message": message.model_dump(mode="json"),
        })
        await self._push_chat_updated(room)
        return message

    # =========================================================================
    # Read receipts
    # =========================================================================

    async def mark_read(self, connection: Connection, room_id: str) -> int:
        """Mark every unread message addressed to the caller's party as read.

        Returns:
            Number of messages that flipped to read.

        Raises:
            AuthorizationError: Caller is not a buyer/seller party of the room.
            PersistenceError: The store failed.
        """
        room, party = await self._router.authorize(connection, room_id)
        if party == Role.ADMIN:
            raise AuthorizationError("Only chat participants can mark messages as read")

        count = await self._store.mark_messages_read(room_id, party)
        room = await self._store.update_chat_summary(
            room_id, ChatSummaryPatch(resetUnread=party)
        )

        logger.info(f"[Pipeline] {count} message(s) marked read in {room_id} by {connection.user_id}")
        await self._router.broadcast(room_id, {
            "type": EventType.MESSAGES_READ.value,
            "roomId": room_id,
            "readBy": connection.user_id,
        })
        await self._push_chat_updated(room)
        return count

    # =========================================================================
    # Room lifecycle
    # =========================================================================

    async def close_chat(self, connection: Connection, room_id: str) -> ChatRoom:
        """Deactivate a room. A later message reactivates it."""
        await self._router.authorize(connection, room_id)
        room = await self._store.update_chat_summary(
            room_id, ChatSummaryPatch(isActive=False)
        )
        logger.info(f"[Pipeline] Chat {room_id} closed by {connection.user_id}")
        await self._push_chat_updated(room)
        return room

    async def _open_room(self, connection: Connection, recipient_id: Optional[str]) -> str:
        """Resolve (or create) the buyer->seller room and join the sender to it."""
        if not recipient_id:
            raise PayloadValidationError("roomId or recipientId is required")
        if connection.role != Role.BUYER:
            raise AuthorizationError("Only buyers can start a conversation")
        if recipient_id == connection.user_id:
            raise PayloadValidationError("Cannot start a conversation with yourself")

        room = await self._store.get_or_create_chat(connection.user_id, recipient_id)
        await self._router.join(connection.connection_id, room.id)
        return room.id

    # =========================================================================
    # Helpers
    # =========================================================================

    def _validate(
        self, content: str, message_type: MessageType, attachment: Optional[Attachment]
    ) -> None:
        if message_type == MessageType.SYSTEM:
            raise PayloadValidationError("Clients cannot send system messages")
        if message_type == MessageType.TEXT and (not content or not content.strip()):
            raise PayloadValidationError("Invalid message format: content is required")
        if message_type in (MessageType.IMAGE, MessageType.FILE) and attachment is None:
            raise PayloadValidationError(
                f"Invalid message format: attachment is required for {message_type.value}"
            )
        if content and len(content) > self.settings.max_message_length:
            raise PayloadValidationError(
                f"Message exceeds {self.settings.max_message_length} characters"
            )

    @staticmethod
    def _recipient_role(sender_role: Role) -> Optional[Role]:
        if sender_role == Role.BUYER:
            return Role.SELLER
        if sender_role == Role.SELLER:
            return Role.BUYER
        # Admin messages address both parties
        return None

    @staticmethod
    def _preview(message: Message) -> str:
        if message.content:
            return message.content[:PREVIEW_LENGTH]
        if message.attachment and message.attachment.fileName:
            return f"[{message.type.value}] {message.attachment.fileName}"
        return f"[{message.type.value}]"

    async def _persist(self, message: Message, patch: ChatSummaryPatch) -> ChatRoom:
        """Write the message, then the summary. Both succeed or neither remains."""
        try:
            await self._store.create_message(message)
        except Exception as e:
            logger.error(f"[Pipeline] Failed to persist message in {message.roomId}: {e}")
            raise PersistenceError("Failed to send message") from e

        try:
            return await self._store.update_chat_summary(message.roomId, patch)
        except Exception as e:
            logger.error(f"[Pipeline] Failed to update chat {message.roomId}: {e}")
            try:
                await self._store.delete_message(message.id)
            except Exception as cleanup_error:
                logger.error(
                    f"[Pipeline] Could not roll back message {message.id}: {cleanup_error}"
                )
            raise PersistenceError("Failed to send message") from e

    def _remember(self, message: Message) -> None:
        key = (message.roomId, message.senderId, message.clientMessageId)
        self._sent[key] = message
        self._sent.move_to_end(key)
        # Evict oldest if cache is full
        while len(self._sent) > self.settings.dedup_cache_size:
            self._sent.popitem(last=False)

    async def _push_chat_updated(self, room: ChatRoom) -> None:
        event = {"type": EventType.CHAT_UPDATED.value, "chat": room.model_dump(mode="json")}
        await self._connections.send_to_user(room.buyerId, event)
        await self._connections.send_to_user(room.sellerId, event)
