"""Chat router providing the WebSocket event channel and HTTP read endpoints.

This module provides:
    - WebSocket /ws: Real-time event channel
    - GET /messages: Room-scoped paginated history
    - GET /messages/search: Room-scoped text/sender search
    - GET /users: Every live session
    - GET /rooms: The room directory
    - GET /archive/messages: Archived messages (when the archive is enabled)

The WebSocket protocol:
    1. Client connects → Server sends {type: "connected", id}
       and {type: "room_list", rooms}
    2. Client sends {type: "user_join", username, room}
       → room receives {type: "user_list"} and {type: "user_joined"}
    3. Client sends {type: "send_message", text, attachment?, clientId?}
       → room receives {type: "receive_message", ...message}
       → sender receives {type: "message_delivered", id, clientId}
    4. Room switches, explicit leaves, room creation, typing, private
       messages, read receipts and reactions follow the same pattern.
    5. On disconnect → every room receives fresh user_list/typing_users.

The HTTP endpoints read the same log the event channel writes, under the same
lock, so a response is a consistent snapshot at request time.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from roomrelay.config import get_config

from .manager import manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/messages")
async def get_messages(
    room: Optional[str] = Query(None, description="Room name (defaults to the default room)"),
    skip: int = Query(0, ge=0, description="Number of most recent messages already fetched"),
    limit: Optional[int] = Query(None, ge=1, description="Page size (capped by max_page_size)"),
) -> JSONResponse:
    """Get one page of a room's history, oldest first.

    Example:
        GET /messages?room=General&skip=0&limit=20
        GET /messages?room=General&skip=20&limit=20
    """
    engine = manager.engine
    if limit is None:
        limit = get_config().chat.default_page_size
    messages, has_more = engine.page(room or engine.default_room, skip, limit)
    return JSONResponse({
        "messages": messages,
        "hasMore": has_more
    })


@router.get("/messages/search")
async def search_messages(
    room: Optional[str] = Query(None, description="Room name (defaults to the default room)"),
    query: str = Query("", description="Case-insensitive text or sender substring"),
) -> JSONResponse:
    """Search a room's history by message text or sender name.

    An empty query returns no results.
    """
    engine = manager.engine
    messages = engine.search(room or engine.default_room, query)
    return JSONResponse({"messages": messages})


@router.get("/users")
async def list_users() -> JSONResponse:
    """Every live session as {id, username, room}."""
    return JSONResponse([s.model_dump() for s in manager.engine.users()])


@router.get("/rooms")
async def list_rooms() -> JSONResponse:
    return JSONResponse({"rooms": manager.engine.room_names()})


@router.get("/archive/messages")
async def get_archived_messages(
    room: Optional[str] = Query(None, description="Room filter (private messages are never listed)"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of rows"),
) -> JSONResponse:
    """Messages kept by the archive, newest first, including evicted ones.

    Returns 404 when the archive is disabled.
    """
    messages = manager.engine.archived_messages(room, limit)
    if messages is None:
        raise HTTPException(status_code=404, detail="Message archive is disabled")
    return JSONResponse({"messages": messages})


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint carrying every relay event for one connection.

    Frames that are not valid JSON are ignored; the connection stays open.
    """
    connection_id = await manager.connect(websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug(f"[WS] Ignoring non-JSON frame from {connection_id}")
                continue
            logger.debug("[WS] %s received: type=%s", connection_id,
                         data.get("type", "?") if isinstance(data, dict) else "?")
            await manager.handle(connection_id, data)

    except WebSocketDisconnect:
        logger.debug(f"[WS] {connection_id} disconnected")
    finally:
        await manager.disconnect(connection_id)
