"""Pydantic schemas for chat rooms, messages and socket events.

These schemas are used by:
    - DuckDBChatStore: row <-> model conversion
    - MessagePipeline: validated message creation
    - EventDispatcher: inbound event payloads
    - REST routes: request and response bodies

Field names are camelCase because they travel to browser clients unchanged.
"""
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Naive UTC timestamp, matching DuckDB's TIMESTAMP column type."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _escape_party(user_id: str) -> str:
    return user_id.replace("~", "~t").replace("_", "~u")


def make_room_id(buyer_id: str, seller_id: str) -> str:
    """Deterministic room identifier for a buyer/seller pair.

    ``_`` separates the parties, so it is escaped inside each ID (along with
    the escape character itself): distinct pairs never share a room ID.
    """
    return f"chat_{_escape_party(buyer_id)}_{_escape_party(seller_id)}"


# =============================================================================
# Enums
# =============================================================================


class Role(str, Enum):
    """Role carried by a verified identity.

    Attributes:
        BUYER: Marketplace customer.
        SELLER: Vendor owning a storefront.
        ADMIN: Platform staff (moderation / escalation).
    """
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class MessageType(str, Enum):
    """Type of chat message.

    Attributes:
        TEXT: Plain text message.
        IMAGE: Image attachment with optional caption.
        FILE: Document attachment with optional caption.
        SYSTEM: Server-originated notice (never sent by clients).
    """
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class AttachmentKind(str, Enum):
    IMAGE = "image"
    DOCUMENT = "document"
    VIDEO = "video"


class EventType(str, Enum):
    """Socket event names, both directions."""
    # client -> server
    AUTH = "auth"
    JOIN_CHAT = "join_chat"
    LEAVE_CHAT = "leave_chat"
    SEND_MESSAGE = "send_message"
    TYPING = "typing"
    MARK_READ = "mark_read"
    CLOSE_CHAT = "close_chat"
    # server -> client
    CONNECTED = "connected"
    CHAT_JOINED = "chat_joined"
    CHAT_LEFT = "chat_left"
    NEW_MESSAGE = "new_message"
    MESSAGE_SENT = "message_sent"
    CHAT_UPDATED = "chat_updated"
    USER_TYPING = "user_typing"
    USER_STATUS = "user_status"
    MESSAGES_READ = "messages_read"
    ERROR = "error"


# =============================================================================
# Identity
# =============================================================================


class VerifiedIdentity(BaseModel):
    """The ``{userId, role}`` pair the messaging core trusts per connection."""
    userId: str = Field(..., min_length=1, description="Authenticated user ID")
    role: Role = Field(..., description="buyer, seller or admin")


# =============================================================================
# Durable records
# =============================================================================


class Attachment(BaseModel):
    """Attachment descriptor for image/file messages."""
    type: AttachmentKind = Field(..., description="image, document or video")
    url: str = Field(..., min_length=1, description="Where the uploaded file lives")
    fileName: Optional[str] = None
    fileSize: Optional[int] = Field(default=None, ge=0)
    mimeType: Optional[str] = None


class UnreadCount(BaseModel):
    buyer: int = 0
    seller: int = 0


class ChatRoom(BaseModel):
    """Room summary, one per buyer/seller pair.

    Attributes:
        id: Deterministic room ID (see make_room_id).
        buyerId: Buyer party.
        sellerId: Seller party.
        lastMessage: Preview of the latest message.
        lastMessageAt: When the latest message was persisted.
        unreadCount: Per-party unread counters.
        isActive: False once a party closes the chat.
        createdAt: When the room was first created.
    """
    id: str
    buyerId: str
    sellerId: str
    lastMessage: str = ""
    lastMessageAt: Optional[datetime] = None
    unreadCount: UnreadCount = Field(default_factory=UnreadCount)
    isActive: bool = True
    createdAt: datetime = Field(default_factory=utcnow)

    def party_role(self, user_id: str) -> Optional[Role]:
        """Return BUYER/SELLER if user_id is a party of this room, else None."""
        if user_id == self.buyerId:
            return Role.BUYER
        if user_id == self.sellerId:
            return Role.SELLER
        return None

    def party_id(self, role: Role) -> str:
        return self.buyerId if role == Role.BUYER else self.sellerId


class Message(BaseModel):
    """A persisted chat message.

    ``content`` is immutable after creation and ``isRead`` only ever moves
    from False to True.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    roomId: str
    senderId: str
    senderRole: Role
    # None for admin and system messages, which address both parties
    recipientId: Optional[str] = None
    recipientRole: Optional[Role] = None
    type: MessageType = MessageType.TEXT
    content: str = ""
    attachment: Optional[Attachment] = None
    isRead: bool = False
    readAt: Optional[datetime] = None
    createdAt: datetime = Field(default_factory=utcnow)
    expiresAt: Optional[datetime] = None
    clientMessageId: Optional[str] = None

    @classmethod
    def expiry_for(cls, created_at: datetime, retention_days: int) -> Optional[datetime]:
        if retention_days <= 0:
            return None
        return created_at + timedelta(days=retention_days)


class ChatSummaryPatch(BaseModel):
    """Partial update applied to a room by ``update_chat_summary``."""
    lastMessage: Optional[str] = None
    lastMessageAt: Optional[datetime] = None
    isActive: Optional[bool] = None
    # Parties whose unread counter is incremented by one
    incrementUnread: list[Role] = Field(default_factory=list)
    # Party whose unread counter is reset to zero
    resetUnread: Optional[Role] = None


class Pagination(BaseModel):
    """Cursor pagination for message history (oldest first in the result)."""
    before: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=100)


# =============================================================================
# Inbound event payloads
# =============================================================================


class RoomPayload(BaseModel):
    roomId: str = Field(..., min_length=1)


class SendMessagePayload(BaseModel):
    """``send_message`` payload.

    Either ``roomId`` (existing room) or ``recipientId`` (first message to a
    seller) must be present.
    """
    roomId: Optional[str] = None
    recipientId: Optional[str] = None
    content: str = ""
    type: MessageType = MessageType.TEXT
    attachment: Optional[Attachment] = None
    clientMessageId: Optional[str] = Field(default=None, max_length=128)


class TypingPayload(BaseModel):
    roomId: str = Field(..., min_length=1)
    isTyping: bool = True


class AuthPayload(BaseModel):
    token: str = Field(..., min_length=1)


# =============================================================================
# REST bodies
# =============================================================================


class CreateChatRequest(BaseModel):
    sellerId: str = Field(..., min_length=1)


class PostMessageRequest(BaseModel):
    """Body of a message sent over REST instead of the socket."""
    content: str = ""
    type: MessageType = MessageType.TEXT
    attachment: Optional[Attachment] = None
    clientMessageId: Optional[str] = Field(default=None, max_length=128)


class SystemMessageRequest(BaseModel):
    content: str = Field(..., min_length=1)


class PresenceResponse(BaseModel):
    userId: str
    isOnline: bool
    lastSeen: Optional[datetime] = None
