"""Shared test fixtures and configuration for backend tests."""
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from marketchat.auth.service import JWTTokenVerifier
from marketchat.chat.hub import ChatHub, set_hub
from marketchat.chat.schemas import Role
from marketchat.chat.store import DuckDBChatStore
from marketchat.config import (
    AppConfig,
    ChatSettings,
    JWTSecrets,
    Secrets,
    StorageSettings,
    set_config,
)
from marketchat.main import app

TEST_SECRET = "test-secret"


class FakeTransport:
    """Stand-in for a WebSocket that records every event sent to it."""

    def __init__(self):
        self.sent: List[dict] = []
        self.fail = False

    async def send_json(self, event: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(event)

    def of_type(self, event_type: str) -> List[dict]:
        return [e for e in self.sent if e.get("type") == event_type]

    def last(self, event_type: Optional[str] = None) -> dict:
        events = self.of_type(event_type) if event_type else self.sent
        assert events, f"no {event_type or 'events'} sent"
        return events[-1]


@pytest.fixture(autouse=True)
def test_config():
    """In-memory storage, no presence grace, fast typing expiry.

    The hub and store singletons are rebuilt for every test.
    """
    config = AppConfig(
        storage=StorageSettings(db_path=":memory:"),
        chat=ChatSettings(presence_grace_seconds=0, typing_timeout_seconds=0.2),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )
    set_config(config)
    set_hub(None)
    DuckDBChatStore.reset_instance()
    yield config
    set_hub(None)
    DuckDBChatStore.reset_instance()
    set_config(None)


@pytest.fixture
def client():
    """Provide a TestClient for the main FastAPI app.

    Entered as a context manager so the lifespan runs and every socket of a
    test shares one event loop.
    """
    with TestClient(app) as client:
        yield client


@pytest.fixture
def verifier():
    return JWTTokenVerifier(secret_key=TEST_SECRET)


@pytest.fixture
def make_token(verifier):
    """Factory: make_token("buyer-1", Role.BUYER) -> signed JWT."""
    def _make(user_id: str, role: Role = Role.BUYER) -> str:
        return verifier.issue_token(user_id, role)
    return _make


@pytest.fixture
def store():
    store = DuckDBChatStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def settings():
    return ChatSettings(presence_grace_seconds=0, typing_timeout_seconds=0.2)


@pytest.fixture
def hub(verifier, store, settings):
    """An isolated hub over an in-memory store."""
    hub = ChatHub(verifier, store, settings)
    yield hub
    hub.presence.shutdown()


@pytest.fixture
def connect(hub, make_token):
    """Factory: await connect("buyer-1", Role.BUYER) -> (Connection, FakeTransport)."""
    async def _connect(user_id: str, role: Role = Role.BUYER):
        transport = FakeTransport()
        connection = await hub.connections.connect(make_token(user_id, role), transport)
        return connection, transport
    return _connect
