"""Reconnecting chat client.

Wraps a ``websockets`` connection to ``/ws/chat`` and keeps it alive:

    - Exponential backoff between attempts, capped in delay and count
    - A fresh token from ``token_provider`` before every attempt
    - Every previously joined room is re-joined after a reconnect
    - Inbound events are routed through a per-event handler table

Terminal conditions surface as exceptions from :meth:`ChatClient.run` so the
application can force the user to sign in again:

    - ReconnectExhaustedError: max_attempts reconnects failed in a row
    - CredentialRevokedError: the token provider (or the server, for a fresh
      token) reports the credential permanently invalid
"""
import asyncio
import json
import logging
import random
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]
EventHandler = Callable[[dict], Awaitable[None]]

# Errors that mean "the transport is gone", as opposed to a rejected credential
TRANSPORT_ERRORS = (ConnectionClosed, InvalidHandshake, OSError, asyncio.TimeoutError)

# Close code the server uses when it refuses the token
AUTH_FAILED_CLOSE_CODE = 4401


class ChatClientError(Exception):
    """Base exception for terminal client errors."""


class ReconnectExhaustedError(ChatClientError):
    """Every reconnect attempt allowed by the policy failed."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Reconnect failed after {attempts} attempt(s)")


class CredentialRevokedError(ChatClientError):
    """The credential is permanently invalid; the user must sign in again.

    Token providers raise this when they cannot produce a usable token.
    """


@dataclass
class ReconnectPolicy:
    """Backoff schedule for reconnect attempts.

    Attributes:
        initial_delay: Delay before the first attempt, in seconds.
        max_delay: Upper bound for any single delay.
        multiplier: Growth factor between consecutive attempts.
        max_attempts: Attempts before giving up.
        jitter: Random extra delay as a fraction of the computed delay.
    """
    initial_delay: float = 1.0
    max_delay: float = 5.0
    multiplier: float = 2.0
    max_attempts: int = 5
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Delay before ``attempt`` (1-based)."""
        delay = min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter * delay)
        return delay


class ChatClient:
    """WebSocket chat client with automatic reconnection.

    Example:
        client = ChatClient("ws://localhost:8000/ws/chat", get_token)
        client.on("new_message", show_message)
        await client.connect()
        await client.join_chat("chat_b1_s1")
        await client.run()
    """

    def __init__(
        self,
        url: str,
        token_provider: TokenProvider,
        policy: Optional[ReconnectPolicy] = None,
        connect: Callable[..., Awaitable[Any]] = ws_connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.policy = policy or ReconnectPolicy()
        self._token_provider = token_provider
        self._connect = connect
        self._sleep = sleep
        self._handlers: Dict[str, List[EventHandler]] = {}
        # Insertion-ordered set of joined rooms
        self.rooms: Dict[str, None] = {}
        self.connection_info: Optional[dict] = None
        self._ws = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on(self, event: str, handler: EventHandler) -> None:
        """Register an async handler for a server event type."""
        self._handlers.setdefault(event, []).append(handler)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self) -> dict:
        """Open one connection, authenticate and re-join tracked rooms.

        Returns:
            The server's ``connected`` event.

        Raises:
            CredentialRevokedError: The token was refused.
            Any transport error from ``TRANSPORT_ERRORS``.
        """
        token = await self._token_provider()
        ws = await self._connect(
            self.url, additional_headers={"Authorization": f"Bearer {token}"}
        )

        try:
            first = json.loads(await ws.recv())
        except ConnectionClosed as e:
            if e.rcvd is not None and e.rcvd.code == AUTH_FAILED_CLOSE_CODE:
                raise CredentialRevokedError(e.rcvd.reason or "Authentication failed") from e
            raise
        if first.get("type") != "connected":
            await ws.close()
            if first.get("code") == "authentication_error":
                raise CredentialRevokedError(first.get("message", "Authentication failed"))
            raise ConnectionError(f"Unexpected handshake reply: {first.get('type')!r}")

        self._ws = ws
        self.connection_info = first
        logger.info(f"[Client] Connected as {first.get('userId')} ({first.get('connectionId')})")

        for room_id in list(self.rooms):
            await self._send({"type": "join_chat", "roomId": room_id})
        await self._emit(first)
        return first

    async def run(self) -> None:
        """Receive and dispatch events until :meth:`close` is called.

        Raises:
            ReconnectExhaustedError: Reconnecting failed ``max_attempts`` times.
            CredentialRevokedError: The credential became permanently invalid.
        """
        if self._ws is None:
            await self.connect()

        while not self._closed:
            try:
                raw = await self._ws.recv()
            except TRANSPORT_ERRORS as e:
                if self._closed:
                    break
                logger.warning(f"[Client] Connection lost: {e}")
                self._ws = None
                await self._reconnect()
                continue

            try:
                event = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("[Client] Ignoring non-JSON frame")
                continue
            await self._emit(event)

    async def _reconnect(self) -> None:
        for attempt in range(1, self.policy.max_attempts + 1):
            delay = self.policy.delay_for(attempt)
            logger.info(
                f"[Client] Reconnect attempt {attempt}/{self.policy.max_attempts} in {delay:.1f}s"
            )
            await self._sleep(delay)
            if self._closed:
                return
            try:
                await self.connect()
                return
            except TRANSPORT_ERRORS as e:
                logger.warning(f"[Client] Reconnect attempt {attempt} failed: {e}")

        raise ReconnectExhaustedError(self.policy.max_attempts)

    async def close(self) -> None:
        """Stop reconnecting and close the socket."""
        self._closed = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    # =========================================================================
    # Outbound events
    # =========================================================================

    async def join_chat(self, room_id: str) -> None:
        self.rooms[room_id] = None
        await self._send({"type": "join_chat", "roomId": room_id})

    async def leave_chat(self, room_id: str) -> None:
        self.rooms.pop(room_id, None)
        await self._send({"type": "leave_chat", "roomId": room_id})

    async def send_message(
        self,
        content: str,
        room_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
        message_type: str = "text",
        attachment: Optional[dict] = None,
        client_message_id: Optional[str] = None,
    ) -> str:
        """Send a chat message.

        Returns:
            The clientMessageId, which the ``message_sent`` acknowledgement
            echoes back. Resending with the same ID never duplicates a message.
        """
        client_message_id = client_message_id or str(uuid.uuid4())
        event = {
            "type": "send_message",
            "content": content,
            "messageType": message_type,
            "clientMessageId": client_message_id,
        }
        if room_id:
            event["roomId"] = room_id
        if recipient_id:
            event["recipientId"] = recipient_id
        if attachment:
            event["attachment"] = attachment
        await self._send(event)
        return client_message_id

    async def typing(self, room_id: str, is_typing: bool = True) -> None:
        await self._send({"type": "typing", "roomId": room_id, "isTyping": is_typing})

    async def mark_read(self, room_id: str) -> None:
        await self._send({"type": "mark_read", "roomId": room_id})

    async def _send(self, event: dict) -> None:
        if self._ws is None:
            raise ConnectionError("Not connected")
        await self._ws.send(json.dumps(event))

    async def _emit(self, event: dict) -> None:
        event_type = event.get("type")
        if event_type in ("chat_joined", "message_sent") and event.get("roomId"):
            # Rooms joined implicitly by a first message are re-joined too
            self.rooms[event["roomId"]] = None
        for handler in self._handlers.get(event_type, []):
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"[Client] Handler for {event_type} failed: {e}")
