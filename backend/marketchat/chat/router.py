"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time messaging, presence and typing
    - GET /chats: The caller's active chats
    - POST /chats: Create-or-get the caller's chat with a seller
    - GET /chats/{room_id}/messages: Paginated message history
    - POST /chats/{room_id}/messages: Send a message without a socket
    - POST /chats/{room_id}/system-message: Admin-posted system notice
    - GET /presence/{user_id}: Online flag and last-seen time

The WebSocket protocol supports:
    - Token authentication (header, query or first ``auth`` frame)
    - Joining and leaving chat rooms
    - Message sending with acknowledgement and idempotent resubmission
    - Typing indicators with automatic expiry
    - Read receipts
    - Online/offline status

Protocol Message Types (client -> server):
    - auth: First frame when no token was given at connect time
    - join_chat / leave_chat: Room subscription
    - send_message: Chat message (roomId, or recipientId for a first message)
    - typing: Typing indicator (start/stop)
    - mark_read: Mark the room's messages as read
    - close_chat: Deactivate the room
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError

from .connections import Connection
from .errors import AuthenticationError, ChatError, PayloadValidationError
from .hub import get_hub
from .schemas import (
    AuthPayload,
    CreateChatRequest,
    EventType,
    Pagination,
    PostMessageRequest,
    PresenceResponse,
    Role,
    SystemMessageRequest,
    VerifiedIdentity,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# Close code sent when the handshake does not authenticate
AUTH_FAILED_CLOSE_CODE = 4401

bearer_scheme = HTTPBearer(auto_error=False)


def _http_error(error: ChatError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)


async def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> VerifiedIdentity:
    """Resolve the bearer token of a REST request into a verified identity."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return await get_hub().verifier.verify_token(credentials.credentials)
    except AuthenticationError as e:
        raise _http_error(e)


# =============================================================================
# REST endpoints
# =============================================================================


@router.get("/chats")
async def list_chats(identity: VerifiedIdentity = Depends(get_identity)) -> JSONResponse:
    """List the caller's active chats, most recent first."""
    try:
        chats = await get_hub().store.list_chats_for_user(identity.userId)
    except ChatError as e:
        raise _http_error(e)
    return JSONResponse({"chats": [chat.model_dump(mode="json") for chat in chats]})


@router.post("/chats")
async def create_chat(
    request: CreateChatRequest,
    identity: VerifiedIdentity = Depends(get_identity),
) -> JSONResponse:
    """Create (or return the existing) chat between the calling buyer and a seller.

    Returns:
        201 with the new chat, or 200 with the existing one.
    """
    if identity.role != Role.BUYER:
        raise HTTPException(status_code=403, detail="Only buyers can start a conversation")
    if request.sellerId == identity.userId:
        raise HTTPException(status_code=422, detail="Cannot start a conversation with yourself")

    store = get_hub().store
    try:
        existing = await store.find_chat(identity.userId, request.sellerId)
        chat = existing or await store.get_or_create_chat(identity.userId, request.sellerId)
    except ChatError as e:
        raise _http_error(e)

    return JSONResponse(
        {"chat": chat.model_dump(mode="json"), "exists": existing is not None},
        status_code=200 if existing else 201,
    )


@router.get("/chats/{room_id}/messages")
async def get_messages(
    room_id: str,
    before: Optional[datetime] = Query(None, description="Cursor: return messages created before this time"),
    limit: int = Query(50, ge=1, le=100, description="Number of messages to return"),
    identity: VerifiedIdentity = Depends(get_identity),
) -> JSONResponse:
    """Get paginated message history for a chat the caller belongs to.

    Clients fetch older messages by passing the ``createdAt`` of the oldest
    message they currently hold as ``before``.

    Returns:
        JSON with a chronological messages array and a hasMore boolean.

    Example:
        GET /chats/chat_b1_s1/messages?limit=50
        GET /chats/chat_b1_s1/messages?before=2024-05-01T10:00:00&limit=50
    """
    hub = get_hub()
    try:
        await hub.rooms.authorize_user(identity.userId, identity.role, room_id)
        messages = await hub.store.find_messages_by_room(
            room_id, Pagination(before=before, limit=limit)
        )

        # Check if there are more messages before the oldest returned
        has_more = False
        if messages:
            older = await hub.store.find_messages_by_room(
                room_id, Pagination(before=messages[0].createdAt, limit=1)
            )
            has_more = len(older) > 0
    except ChatError as e:
        raise _http_error(e)

    return JSONResponse({
        "messages": [msg.model_dump(mode="json") for msg in messages],
        "hasMore": has_more,
    })


@router.post("/chats/{room_id}/messages")
async def send_message(
    room_id: str,
    request: PostMessageRequest,
    identity: VerifiedIdentity = Depends(get_identity),
) -> JSONResponse:
    """Send a message to a chat the caller is a party of.

    Takes the same path as ``send_message`` on the socket: the message is
    persisted, the room summary updated, then the message is fanned out to
    every subscriber of the room.

    Returns:
        201 with the persisted message.
    """
    try:
        message = await get_hub().pipeline.send_as(
            identity,
            room_id,
            request.content,
            message_type=request.type,
            attachment=request.attachment,
            client_message_id=request.clientMessageId,
        )
    except ChatError as e:
        raise _http_error(e)

    return JSONResponse({"message": message.model_dump(mode="json")}, status_code=201)


@router.post("/chats/{room_id}/system-message")
async def post_system_message(
    room_id: str,
    request: SystemMessageRequest,
    identity: VerifiedIdentity = Depends(get_identity),
) -> JSONResponse:
    """Post a system notice to a chat and broadcast it to its subscribers."""
    if identity.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Only admins can post system messages")
    try:
        message = await get_hub().pipeline.post_system_message(room_id, request.content)
    except ChatError as e:
        raise _http_error(e)

    logger.info(f"[REST] Admin {identity.userId} posted system message to {room_id}")
    return JSONResponse({"success": True, "message": message.model_dump(mode="json")})


@router.get("/presence/{user_id}", response_model=PresenceResponse)
async def get_presence(
    user_id: str,
    identity: VerifiedIdentity = Depends(get_identity),
) -> PresenceResponse:
    """Online flag and last-seen time of a user."""
    presence = get_hub().presence
    return PresenceResponse(
        userId=user_id,
        isOnline=presence.is_online(user_id),
        lastSeen=presence.get_last_seen(user_id),
    )


# =============================================================================
# WebSocket
# =============================================================================


def _bearer_token(websocket: WebSocket) -> Optional[str]:
    header = websocket.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


async def _receive_auth_frame(websocket: WebSocket, timeout: float) -> str:
    """Wait for the first ``auth`` frame and return its token.

    Raises:
        AuthenticationError: On timeout, malformed JSON or any other first frame.
    """
    try:
        raw = await asyncio.wait_for(websocket.receive_text(), timeout=timeout)
    except asyncio.TimeoutError:
        raise AuthenticationError("Authentication timed out")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise AuthenticationError("Authentication required")
    if not isinstance(data, dict) or data.get("type") != EventType.AUTH.value:
        raise AuthenticationError("Authentication required")
    try:
        return AuthPayload(token=data.get("token") or "").token
    except ValidationError:
        raise AuthenticationError("Authentication required")


async def _authenticate(websocket: WebSocket, token: Optional[str]) -> Optional[Connection]:
    """Run the handshake. Returns None after closing the socket on failure."""
    hub = get_hub()
    try:
        token = token or _bearer_token(websocket)
        if not token:
            token = await _receive_auth_frame(websocket, hub.settings.handshake_timeout_seconds)
        return await hub.connections.connect(token, websocket)
    except AuthenticationError as e:
        logger.info(f"[WS] Handshake rejected: {e.message}")
        await websocket.send_json(e.to_event())
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
        return None
    except WebSocketDisconnect:
        logger.info("[WS] Client left before authenticating")
        return None


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token, if not sent as a header"),
) -> None:
    """WebSocket endpoint for real-time chat.

    SECURITY MODEL:
        - The verified token is the only source of userId and role
        - No event is processed before authentication succeeds
        - Every room operation re-checks membership against the store

    Protocol Flow:
        1. Client connects with a token (or sends {type: "auth", token} first)
           -> Server sends: {type: "connected", connectionId, userId, role}
           -> On failure: {type: "error", code: "authentication_error"}, close 4401
        2. Client sends: {type: "join_chat", roomId}
           -> Server sends: {type: "chat_joined", roomId, chat}
        3. Client sends: {type: "send_message", roomId, content, messageType?}
           -> Sender receives: {type: "message_sent", roomId, message, clientMessageId}
           -> Other subscribers: {type: "new_message", roomId, message}
           -> Both parties: {type: "chat_updated", chat}
        4. Client sends: {type: "mark_read", roomId}
           -> Room receives: {type: "messages_read", roomId, readBy}
        5. On disconnect -> user_status offline after the grace delay
    """
    await websocket.accept()
    connection = await _authenticate(websocket, token)
    if connection is None:
        return

    hub = get_hub()
    reason = "closed"
    try:
        await websocket.send_json({
            "type": EventType.CONNECTED.value,
            "connectionId": connection.connection_id,
            "userId": connection.user_id,
            "role": connection.role.value,
        })

        # Main message loop
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await connection.send(PayloadValidationError("Invalid JSON").to_event())
                continue
            if not isinstance(data, dict):
                await connection.send(
                    PayloadValidationError("Event must be a JSON object").to_event()
                )
                continue

            await hub.dispatcher.dispatch(connection, data)

    except WebSocketDisconnect as e:
        reason = f"client closed ({e.code})"
    except Exception as e:
        reason = "error"
        logger.error(f"[WS] Connection {connection.connection_id} failed: {e}", exc_info=True)
    finally:
        await hub.connections.disconnect(connection.connection_id, reason)
