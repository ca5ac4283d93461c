"""Tests for the reconnecting chat client."""
import json

import pytest
from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close

from marketchat.client import (
    ChatClient,
    CredentialRevokedError,
    ReconnectExhaustedError,
    ReconnectPolicy,
)

ROOM = "chat_buyer-1_seller-1"


class FakeSocket:
    """Scripted websocket: recv() replays frames, raising any exception in the script."""

    def __init__(self, *script):
        self.script = list(script)
        self.sent = []
        self.closed = False

    async def recv(self):
        if not self.script:
            raise ConnectionClosedError(None, None)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return json.dumps(item)

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True


def connected(user_id="buyer-1"):
    return {"type": "connected", "connectionId": f"conn-{user_id}", "userId": user_id, "role": "buyer"}


class Harness:
    """Fake connect/sleep/token collaborators that record what the client did."""

    def __init__(self, *outcomes, tokens=None):
        self.outcomes = list(outcomes)
        self.tokens = list(tokens or [])
        self.headers = []
        self.sleeps = []
        self.token_calls = 0

    async def connect(self, url, additional_headers=None):
        self.headers.append(additional_headers)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def sleep(self, delay):
        self.sleeps.append(delay)

    async def token_provider(self):
        self.token_calls += 1
        token = self.tokens.pop(0) if self.tokens else f"token-{self.token_calls}"
        if isinstance(token, Exception):
            raise token
        return token

    def client(self, policy=None):
        return ChatClient(
            "ws://chat.test/ws/chat",
            self.token_provider,
            policy=policy,
            connect=self.connect,
            sleep=self.sleep,
        )


class TestReconnectPolicy:
    """Tests for the backoff schedule."""

    def test_default_schedule_is_capped(self):
        policy = ReconnectPolicy()
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_adds_bounded_delay(self):
        policy = ReconnectPolicy(initial_delay=2.0, jitter=0.5)
        for _ in range(20):
            assert 2.0 <= policy.delay_for(1) <= 3.0


class TestChatClient:
    """Tests for connection, resubscription and terminal errors."""

    @pytest.mark.asyncio
    async def test_connect_sends_bearer_token(self):
        harness = Harness(FakeSocket(connected()), tokens=["abc"])
        client = harness.client()
        seen = []

        async def on_connected(event):
            seen.append(event)

        client.on("connected", on_connected)
        info = await client.connect()

        assert harness.headers == [{"Authorization": "Bearer abc"}]
        assert info["userId"] == "buyer-1"
        assert client.connected
        assert seen == [info]

    @pytest.mark.asyncio
    async def test_reconnect_refreshes_token_and_rejoins_rooms(self):
        first = FakeSocket(
            connected(),
            {"type": "chat_joined", "roomId": ROOM},
            ConnectionResetError("network down"),
        )
        second = FakeSocket(connected(), {"type": "new_message", "roomId": ROOM})
        harness = Harness(first, second)
        client = harness.client()

        async def stop(event):
            await client.close()

        client.on("new_message", stop)
        await client.connect()
        await client.join_chat(ROOM)
        await client.run()

        assert harness.sleeps == [1.0]
        assert [h["Authorization"] for h in harness.headers] == ["Bearer token-1", "Bearer token-2"]
        assert first.sent == [{"type": "join_chat", "roomId": ROOM}]
        assert second.sent == [{"type": "join_chat", "roomId": ROOM}]
        assert second.closed

    @pytest.mark.asyncio
    async def test_rooms_opened_by_first_message_are_rejoined(self):
        first = FakeSocket(
            connected(),
            {"type": "message_sent", "roomId": ROOM, "message": {}, "clientMessageId": "c"},
        )
        second = FakeSocket(connected(), {"type": "ping"})
        harness = Harness(first, second)
        client = harness.client()

        async def stop(event):
            await client.close()

        client.on("ping", stop)
        await client.run()

        assert client.rooms == {ROOM: None}
        assert second.sent == [{"type": "join_chat", "roomId": ROOM}]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        harness = Harness(
            FakeSocket(connected()),
            ConnectionRefusedError("refused"),
            ConnectionRefusedError("refused"),
            ConnectionRefusedError("refused"),
        )
        client = harness.client(ReconnectPolicy(max_attempts=3))

        await client.connect()
        with pytest.raises(ReconnectExhaustedError) as exc:
            await client.run()

        assert exc.value.attempts == 3
        assert harness.sleeps == [1.0, 2.0, 4.0]
        assert harness.token_calls == 4

    @pytest.mark.asyncio
    async def test_revoked_credential_is_terminal(self):
        harness = Harness(
            FakeSocket(connected()),
            tokens=["good", CredentialRevokedError("account suspended")],
        )
        client = harness.client()

        await client.connect()
        with pytest.raises(CredentialRevokedError):
            await client.run()
        assert harness.sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_server_rejecting_fresh_token_is_terminal(self):
        rejected = FakeSocket(
            {"type": "error", "code": "authentication_error", "message": "Authentication failed"}
        )
        harness = Harness(FakeSocket(connected()), rejected)
        client = harness.client()

        await client.connect()
        with pytest.raises(CredentialRevokedError, match="Authentication failed"):
            await client.run()
        assert rejected.closed

    @pytest.mark.asyncio
    async def test_auth_close_code_is_terminal(self):
        closed = FakeSocket(ConnectionClosedError(Close(4401, "token revoked"), None))
        harness = Harness(FakeSocket(connected()), closed)
        client = harness.client()

        await client.connect()
        with pytest.raises(CredentialRevokedError, match="token revoked"):
            await client.run()
        assert harness.sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_other_close_codes_are_retried(self):
        dropped = FakeSocket(ConnectionClosedError(Close(1011, "server restarting"), None))
        harness = Harness(
            FakeSocket(connected()), dropped, ConnectionRefusedError("refused"),
        )
        client = harness.client(ReconnectPolicy(max_attempts=2))

        await client.connect()
        with pytest.raises(ReconnectExhaustedError):
            await client.run()
        assert harness.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_send_message_generates_client_message_id(self):
        socket = FakeSocket(connected())
        client = Harness(socket).client()
        await client.connect()

        client_message_id = await client.send_message(
            "Is it in stock?", room_id=ROOM, message_type="text"
        )

        [frame] = socket.sent
        assert frame["type"] == "send_message"
        assert frame["roomId"] == ROOM
        assert frame["messageType"] == "text"
        assert frame["clientMessageId"] == client_message_id
        assert len(client_message_id) == 36

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_the_loop(self):
        socket = FakeSocket(connected(), {"type": "user_typing"}, {"type": "user_status"})
        client = Harness(socket).client()
        received = []

        async def broken(event):
            raise RuntimeError("ui crashed")

        async def stop(event):
            received.append(event["type"])
            await client.close()

        client.on("user_typing", broken)
        client.on("user_status", stop)
        await client.connect()
        await client.run()

        assert received == ["user_status"]

    @pytest.mark.asyncio
    async def test_send_when_disconnected(self):
        client = Harness().client()
        with pytest.raises(ConnectionError):
            await client.mark_read(ROOM)
