"""MarketChat Backend Application.

This is the main entry point for the MarketChat service, the realtime
messaging core of the marketplace: buyers and sellers talk in per-pair chat
rooms over WebSockets, with typing indicators, read receipts and online
status.

Modules:
    - chat: WebSocket transport, rooms, message pipeline, presence
    - auth: Identity bridge (local JWT or remote introspection)
    - client: Reconnecting WebSocket client
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketchat.chat.errors import PersistenceError
from marketchat.chat.hub import build_hub, set_hub
from marketchat.chat.router import router as chat_router
from marketchat.chat.store import ChatStore, DuckDBChatStore
from marketchat.config import get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx logs every introspection request; websockets logs every frame at DEBUG.
for _noisy in ("httpx", "httpcore", "websockets"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def purge_expired_messages(store: ChatStore, interval: float) -> None:
    """Delete messages past their retention period, every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            purged = await store.purge_expired()
            if purged:
                logger.info(f"Purged {purged} expired message(s)")
        except PersistenceError as e:
            logger.error(f"Expired message purge failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in marketchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    hub = build_hub(config)
    set_hub(hub)

    purge_task = asyncio.create_task(
        purge_expired_messages(hub.store, config.chat.purge_interval_seconds)
    )
    logger.info(
        f"Server running on http://{config.server.host}:{config.server.port} "
        f"(message retention: {config.chat.retention_days} days)"
    )

    yield  # Application runs here

    # Shutdown
    purge_task.cancel()
    try:
        await purge_task
    except asyncio.CancelledError:
        pass
    await hub.shutdown()
    set_hub(None)
    DuckDBChatStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="MarketChat API",
    description="Realtime buyer/seller messaging for the marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
