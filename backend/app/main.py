"""Chat Backend Application.

This is the main entry point for the realtime chat backend service.

Modules:
    - chat: WebSocket realtime messaging and chat room REST endpoints
    - auth: Bearer-token identity resolution
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.chat.rooms_router import router as rooms_router
from app.chat.router import router as chat_router
from app.chat.runtime import get_runtime, shutdown_runtime
from app.config import get_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-connection chatter from the ASGI server and websocket library.
for _noisy in (
    "websockets",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the chat runtime on startup and release its store on shutdown."""
    config = get_config()

    # `logging.level` in chat.settings.yaml overrides the INFO default.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    runtime = get_runtime()
    logger.info(
        f"Chat server ready on http://{config.server.host}:{config.server.port} "
        f"(store={type(runtime.store).__name__})"
    )

    yield

    shutdown_runtime()
    logger.info("Chat runtime closed")


app = FastAPI(
    title="Chat API",
    description="Realtime chat backend: rooms, messages and live delivery over WebSocket",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(chat_router)
app.include_router(rooms_router)


@app.get("/health")
async def health() -> dict:
    """Liveness probe."""
    return {"status": "ok"}
