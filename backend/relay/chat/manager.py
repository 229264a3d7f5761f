"""WebSocket connection manager for buyer/seller chat rooms.

This module tracks open WebSocket connections, the room each one has joined,
and relays chat messages between co-members of a room after persisting them
through the configured MessageStore.

Connection lifecycle:
    - Unjoined: accepted, no identity attached. Only ``join`` is acted on.
    - Joined:   userId/roomId attached by a ``join`` frame. ``message``
                frames are persisted and broadcast to the room.
    - Closed:   disconnect() discards the membership. No leave frame.

Key features:
    - Room membership kept per connection, so several tabs of the same user
      and both sides of a conversation can share a room
    - Persist-before-broadcast: the stored record (server id + createdAt)
      is what every recipient receives, sender included
    - Protocol and persistence errors are turned into ``error`` frames for
      the originating connection only; the connection stays open
    - Concurrent delivery with asyncio.gather() and dead connection cleanup

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads. A
    multi-process deployment would need an external shared registry.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from fastapi import WebSocket
from pydantic import ValidationError

from .schemas import FrameType, JoinFrame, MessageFrame, error_frame, message_frame
from .store import MessageStore, get_store

logger = logging.getLogger(__name__)

# =============================================================================
# Error texts sent in ``error`` frames
# =============================================================================

JOIN_FIELDS_REQUIRED = "userId and roomId are required"
MESSAGE_FIELDS_REQUIRED = "roomId, senderId, and content are required"
NOT_JOINED = "Join a room before sending messages"
MALFORMED_FRAME = "Failed to process message"
PERSISTENCE_FAILED = "Failed to save message"


@dataclass(frozen=True)
class Membership:
    """Identity attached to a connection by its ``join`` frame."""
    user_id: str
    room_id: str


# =============================================================================
# Connection Manager
# =============================================================================


class ConnectionManager:
    """Owns the room registry and the frame protocol for every open socket.

    The registry maps each open WebSocket to its Membership, or to None
    while the connection is still Unjoined. Nothing outside this class
    mutates it.

    Note:
        This is a singleton-style global instance. All WebSocket handlers
        share the same ConnectionManager to maintain consistent state.
    """

    def __init__(self, store: Optional[MessageStore] = None) -> None:
        """Initialize an empty registry.

        Args:
            store: MessageStore to persist into. Defaults to the
                process-wide store returned by get_store() at call time.
        """
        # websocket -> Membership (None until the connection joins)
        self.connections: Dict[WebSocket, Optional[Membership]] = {}
        self._store = store

    @property
    def store(self) -> MessageStore:
        return self._store if self._store is not None else get_store()

    # =========================================================================
    # Registry
    # =========================================================================

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a WebSocket connection and register it as Unjoined."""
        await websocket.accept()
        self.connections[websocket] = None
        logger.info(f"[Manager] Connection accepted ({len(self.connections)} open)")

    def join(self, websocket: WebSocket, user_id: str, room_id: str) -> Membership:
        """Attach an identity to a connection.

        A second join on the same connection overwrites the previous
        identity without validation.

        Returns:
            The new Membership.
        """
        previous = self.connections.get(websocket)
        membership = Membership(user_id=user_id, room_id=room_id)
        self.connections[websocket] = membership
        if previous is not None:
            logger.info(
                f"[Manager] Re-join: {previous.user_id}@{previous.room_id} "
                f"-> {user_id}@{room_id}"
            )
        else:
            logger.info(f"[Manager] User {user_id} joined room {room_id}")
        return membership

    def disconnect(self, websocket: WebSocket) -> Optional[Membership]:
        """Forget a connection and its membership.

        Returns:
            The membership the connection held, None if it never joined.
        """
        membership = self.connections.pop(websocket, None)
        if membership is not None:
            logger.info(
                f"[Manager] User {membership.user_id} left room {membership.room_id}"
            )
        return membership

    def get_membership(self, websocket: WebSocket) -> Optional[Membership]:
        """Membership of a connection, None if Unjoined or unknown."""
        return self.connections.get(websocket)

    def get_room_connections(self, room_id: str) -> List[WebSocket]:
        """All open connections currently joined to a room."""
        return [
            ws for ws, membership in self.connections.items()
            if membership is not None and membership.room_id == room_id
        ]

    def get_room_size(self, room_id: str) -> int:
        """Get the number of connections joined to a room."""
        return len(self.get_room_connections(room_id))

    def clear(self) -> None:
        """Drop every registered connection (used by tests and shutdown)."""
        self.connections.clear()

    # =========================================================================
    # Frame protocol
    # =========================================================================

    async def handle_frame(self, websocket: WebSocket, raw: str) -> None:
        """Process one inbound frame from a connection.

        Never raises for protocol or persistence problems: they are logged
        and reported to this connection as an ``error`` frame.

        Args:
            websocket: The connection the frame arrived on.
            raw: The raw text payload.
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError, RecursionError) as e:
            logger.warning(f"[Manager] Malformed frame ignored: {e}")
            await self._safe_send(websocket, error_frame(MALFORMED_FRAME))
            return

        if not isinstance(data, dict):
            logger.warning(f"[Manager] Frame is not a JSON object: {type(data).__name__}")
            await self._safe_send(websocket, error_frame(MALFORMED_FRAME))
            return

        frame_type = data.get("type")
        logger.debug("[Manager] Received frame type=%s", frame_type)

        if frame_type == FrameType.JOIN.value:
            await self._handle_join(websocket, data)
        elif frame_type == FrameType.MESSAGE.value:
            await self._handle_message(websocket, data)
        else:
            logger.debug(f"[Manager] Unrecognized frame type ignored: {frame_type!r}")

    async def _handle_join(self, websocket: WebSocket, data: dict) -> None:
        try:
            frame = JoinFrame.model_validate(data)
        except ValidationError:
            await self._safe_send(websocket, error_frame(JOIN_FIELDS_REQUIRED))
            return
        self.join(websocket, frame.userId, frame.roomId)

    async def _handle_message(self, websocket: WebSocket, data: dict) -> None:
        try:
            frame = MessageFrame.model_validate(data)
        except ValidationError:
            await self._safe_send(websocket, error_frame(MESSAGE_FIELDS_REQUIRED))
            return

        if self.get_membership(websocket) is None:
            logger.warning(f"[Manager] Message from unjoined connection rejected (room {frame.roomId})")
            await self._safe_send(websocket, error_frame(NOT_JOINED))
            return

        try:
            message = await self.store.create_message(
                frame.roomId, frame.senderId, frame.content
            )
        except Exception as e:
            logger.error(f"[Manager] Failed to persist message for room {frame.roomId}: {e}")
            await self._safe_send(websocket, error_frame(PERSISTENCE_FAILED))
            return

        await self.broadcast(message_frame(message), frame.roomId)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def broadcast(self, frame: dict, room_id: str) -> None:
        """Send a frame to every connection joined to a room concurrently.

        Returns once every send has completed or failed, so successive
        broadcasts reach each recipient in call order. Connections whose
        send fails are removed from the registry.

        Args:
            frame: JSON-serializable frame to broadcast.
            room_id: Room to broadcast to.
        """
        connections = self.get_room_connections(room_id)
        if not connections:
            return

        results = await asyncio.gather(
            *[self._safe_send(conn, frame) for conn in connections],
            return_exceptions=True
        )

        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(room_id, failed_connections)

    async def _safe_send(self, connection: WebSocket, frame: dict) -> bool:
        """Send a frame to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(frame)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(
        self, room_id: str, failed_connections: List[WebSocket]
    ) -> None:
        for conn in failed_connections:
            if self.connections.pop(conn, None) is not None:
                logger.debug(f"Removed dead connection from room {room_id}")


# Global singleton instance used by all WebSocket handlers
manager = ConnectionManager()
