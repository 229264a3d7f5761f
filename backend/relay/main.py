"""Chat Relay Backend Application.

This is the main entry point for the chat relay service: real-time
buyer/seller messaging tied to marketplace listings.

Modules:
    - chat: WebSocket relay, room registry, message store and REST glue
    - client: Reconnecting Python client for the relay protocol
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relay.chat.manager import manager
from relay.chat.router import router as chat_router
from relay.chat.store import create_store, set_store
from relay.config import get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn.access logs every history fetch; websockets logs every frame on debug
for _noisy in (
    "uvicorn.access",
    "websockets",
    "websockets.client",
    "websockets.server",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in relay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    storage = config.storage
    set_store(create_store(storage.backend, storage.db_path))
    logger.info(
        "Message store ready: backend=%s%s",
        storage.backend,
        f" db={storage.db_path}" if storage.backend == "duckdb" else "",
    )
    logger.info(
        f"Chat relay listening on ws://{config.server.host}:{config.server.port}"
        f"{config.server.ws_path}"
    )

    yield  # Application runs here

    # Shutdown
    manager.clear()
    set_store(None)
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chat Relay API",
    description="Real-time buyer/seller chat relay for marketplace listings",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
