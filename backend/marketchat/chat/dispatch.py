"""Typed dispatch table for inbound socket events.

Each client->server event type maps to exactly one handler. A handler
returns an optional reply that goes back to the originating connection only;
room-wide effects happen through the router and pipeline. Errors raised by
handlers become an ``error`` event for the originating client and never
affect other subscribers.
"""
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from .connections import Connection
from .errors import ChatError, PayloadValidationError
from .schemas import EventType, RoomPayload, SendMessagePayload, TypingPayload

if TYPE_CHECKING:
    from .hub import ChatHub

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, dict], Awaitable[Optional[dict]]]


class EventDispatcher:
    """Routes inbound events to the messaging core."""

    def __init__(self, hub: "ChatHub") -> None:
        self._hub = hub
        self._handlers: Dict[EventType, Handler] = {
            EventType.JOIN_CHAT: self._join_chat,
            EventType.LEAVE_CHAT: self._leave_chat,
            EventType.SEND_MESSAGE: self._send_message,
            EventType.TYPING: self._typing,
            EventType.MARK_READ: self._mark_read,
            EventType.CLOSE_CHAT: self._close_chat,
        }

    @property
    def event_types(self):
        return set(self._handlers)

    async def dispatch(self, connection: Connection, data: dict) -> None:
        """Handle one inbound event to completion."""
        try:
            event_type = EventType(data.get("type"))
            handler = self._handlers[event_type]
        except (ValueError, KeyError):
            await connection.send(
                PayloadValidationError(f"Unknown event type: {data.get('type')!r}").to_event()
            )
            return

        logger.debug("[WS] %s received: type=%s", connection.connection_id, event_type.value)
        try:
            reply = await handler(connection, data)
        except ValidationError as e:
            await connection.send(
                PayloadValidationError(f"Invalid {event_type.value} payload: {e.errors()[0]['msg']}").to_event()
            )
            return
        except ChatError as e:
            logger.info(
                f"[WS] {event_type.value} from {connection.user_id} refused: {e.code} {e.message}"
            )
            await connection.send(e.to_event())
            return

        if reply is not None:
            await connection.send(reply)

    # =========================================================================
    # Handlers
    # =========================================================================

    @staticmethod
    def _body(data: dict) -> dict:
        """Event fields, from a nested ``payload`` or the top-level frame.

        A bare string payload is taken as the room ID. At top level the
        message kind travels as ``messageType`` because ``type`` names the event.
        """
        payload = data.get("payload")
        if isinstance(payload, dict):
            return payload
        if isinstance(payload, str):
            return {"roomId": payload}
        body = {k: v for k, v in data.items() if k != "type"}
        if "messageType" in body:
            body["type"] = body.pop("messageType")
        return body

    async def _join_chat(self, connection: Connection, data: dict) -> dict:
        payload = RoomPayload(**self._body(data))
        room = await self._hub.rooms.join(connection.connection_id, payload.roomId)
        return {
            "type": EventType.CHAT_JOINED.value,
            "roomId": payload.roomId,
            "chat": room.model_dump(mode="json"),
        }

    async def _leave_chat(self, connection: Connection, data: dict) -> dict:
        payload = RoomPayload(**self._body(data))
        self._hub.rooms.leave(connection.connection_id, payload.roomId)
        return {"type": EventType.CHAT_LEFT.value, "roomId": payload.roomId}

    async def _send_message(self, connection: Connection, data: dict) -> dict:
        payload = SendMessagePayload(**self._body(data))
        message = await self._hub.pipeline.send(
            connection,
            payload.roomId,
            payload.content,
            message_type=payload.type,
            attachment=payload.attachment,
            client_message_id=payload.clientMessageId,
            recipient_id=payload.recipientId,
        )
        return {
            "type": EventType.MESSAGE_SENT.value,
            "roomId": message.roomId,
            "message": message.model_dump(mode="json"),
            "clientMessageId": payload.clientMessageId,
        }

    async def _typing(self, connection: Connection, data: dict) -> None:
        payload = TypingPayload(**self._body(data))
        await self._hub.presence.set_typing(connection, payload.roomId, payload.isTyping)

    async def _mark_read(self, connection: Connection, data: dict) -> None:
        payload = RoomPayload(**self._body(data))
        await self._hub.pipeline.mark_read(connection, payload.roomId)

    async def _close_chat(self, connection: Connection, data: dict) -> None:
        payload = RoomPayload(**self._body(data))
        await self._hub.pipeline.close_chat(connection, payload.roomId)
