"""Chat router providing the WebSocket relay and its REST glue.

This module provides:
    - WebSocket /ws: Real-time chat relay (path from server.ws_path)
    - GET /api/messages/{room_id}: Message history for hydrating a chat view
    - POST /api/chat-rooms: Create (or return the existing) buyer/seller room
    - GET /api/chat-rooms: Rooms a user takes part in

Protocol Flow:
    1. Client connects → connection registered as Unjoined
    2. Client sends: {type: "join", userId, roomId}
       → connection attached to the room (no reply)
    3. Client sends: {type: "message", roomId, senderId, content}
       → message persisted, then broadcast to every connection in the room:
         {type: "message", message: {id, roomId, senderId, content, createdAt}}
    4. Any problem with a frame → {type: "error", error: "..."} to the sender only
    5. On disconnect → membership discarded

The history endpoint serializes messages exactly like the socket delivery
so the client can merge both sources by id.
"""
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from relay.config import get_config

from .manager import manager
from .schemas import ChatRoomCreate
from .store import get_store

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/messages/{room_id}")
async def get_room_messages(room_id: str) -> JSONResponse:
    """Get the full message history of a room, oldest first.

    Args:
        room_id: The room ID.

    Returns:
        JSON array of messages, or 500 with an error body if the store fails.
    """
    try:
        messages = await get_store().get_messages_by_room(room_id)
    except Exception as e:
        logger.error(f"[API] Error fetching messages for room {room_id}: {e}")
        return JSONResponse({"error": "Failed to fetch messages"}, status_code=500)
    return JSONResponse([msg.model_dump(mode="json") for msg in messages])


@router.post("/api/chat-rooms")
async def create_chat_room(request: dict) -> JSONResponse:
    """Return the chat room for (product, buyer), creating it if needed.

    Args:
        request: JSON body with productId, buyerId and sellerId.

    Returns:
        The existing or newly created ChatRoom; 400 if a field is missing.
    """
    try:
        body = ChatRoomCreate.model_validate(request)
    except ValidationError:
        return JSONResponse(
            {"error": "productId, buyerId, and sellerId are required"},
            status_code=400
        )

    store = get_store()
    try:
        existing = await store.get_chat_room_by_product_and_buyer(body.productId, body.buyerId)
        if existing is not None:
            return JSONResponse(existing.model_dump(mode="json"))
        room = await store.create_chat_room(body.productId, body.buyerId, body.sellerId)
    except Exception as e:
        logger.error(f"[API] Error creating chat room: {e}")
        return JSONResponse({"error": "Failed to create chat room"}, status_code=500)

    logger.info(f"[API] Created chat room {room.id} for product {room.productId}")
    return JSONResponse(room.model_dump(mode="json"))


@router.get("/api/chat-rooms")
async def list_chat_rooms(
    userId: str = Query(..., min_length=1, description="Buyer or seller user ID")
) -> JSONResponse:
    """List the chat rooms where a user is the buyer or the seller."""
    try:
        rooms = await get_store().get_chat_rooms_by_user(userId)
    except Exception as e:
        logger.error(f"[API] Error fetching chat rooms: {e}")
        return JSONResponse({"error": "Failed to fetch chat rooms"}, status_code=500)
    return JSONResponse([room.model_dump(mode="json") for room in rooms])


@router.websocket(get_config().server.ws_path)
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for the chat relay.

    Frames from one connection are handled strictly in arrival order: the
    next frame is not read until the previous one (including its
    persistence and broadcast) has finished.

    Args:
        websocket: The WebSocket connection.
    """
    await manager.connect(websocket)
    logger.info("[WS] New WebSocket connection")

    try:
        while True:
            event = await websocket.receive()
            if event["type"] == "websocket.disconnect":
                break
            raw = event.get("text")
            if raw is None and event.get("bytes") is not None:
                raw = event["bytes"].decode("utf-8", errors="replace")
            await manager.handle_frame(websocket, raw)
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)
        logger.info("[WS] WebSocket connection closed")
