"""roomrelay backend application.

This is the main entry point for the room relay service: a real-time,
room-partitioned chat relay with presence, typing indicators, private
messages, reactions and read receipts.

Modules:
    - chat: Coordination engine, WebSocket event channel and history endpoints
    - archive: Optional DuckDB copy of stored messages
    - client: Async client library reconciling pushed events with history

Run with:
    uvicorn roomrelay.main:app --port 5000
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from roomrelay.archive.service import MessageArchiveService
from roomrelay.chat.engine import ChatEngine
from roomrelay.chat.manager import manager
from roomrelay.chat.router import router as chat_router
from roomrelay.config import get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Request and transport chatter is not useful when debugging relay logic.
for _noisy in (
    "uvicorn.access",
    "httpx",
    "httpcore",
    "websockets",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

_started_at = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    archive = None
    if config.archive.enabled:
        try:
            archive = MessageArchiveService.get_instance(db_path=config.archive.db_path)
        except Exception as exc:
            logger.warning("Failed to open message archive: %s", exc)
    else:
        logger.info("Message archive disabled in config.")

    manager.configure(ChatEngine(
        capacity=config.chat.history_capacity,
        eviction=config.chat.eviction,
        default_room=config.chat.default_room,
        max_page_size=config.chat.max_page_size,
        archive=archive,
    ))
    logger.info(
        f"Relay ready on http://{config.server.host}:{config.server.port} "
        f"(capacity={config.chat.history_capacity}, eviction={config.chat.eviction})"
    )

    yield  # Application runs here

    # Shutdown
    MessageArchiveService.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="roomrelay API",
    description="Room-partitioned real-time chat relay",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["GET", "POST"],
    allow_credentials=True,
)

app.include_router(chat_router)


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=exc)
    return JSONResponse({"error": "Internal Server Error"}, status_code=500)


@app.get("/", response_class=PlainTextResponse)
async def root() -> str:
    return "roomrelay chat server is running"


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status, archive state and row count, uptime in seconds and server time.
    """
    archived = manager.engine.archived_count()
    return {
        "status": "ok",
        "archive": "enabled" if archived is not None else "disabled",
        "archivedMessages": archived,
        "uptime": round(time.monotonic() - _started_at, 3),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def run() -> None:
    """Serve the app with uvicorn using the configured host and port."""
    import uvicorn

    config = get_config()
    uvicorn.run(app, host=config.server.host, port=config.server.port)
