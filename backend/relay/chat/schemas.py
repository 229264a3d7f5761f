"""Pydantic schemas for chat messages, chat rooms and socket frames.

These schemas are used by:
    - ConnectionManager: validating inbound frames, building outbound frames
    - MessageStore implementations: the persisted Message / ChatRoom records
    - REST glue: GET /api/messages/{roomId}, /api/chat-rooms
    - ChatClient: parsing delivered messages

Field names are camelCase because they are the wire format shared with the
browser client. The REST history endpoint and the socket ``message`` frame
serialize Message identically (``model_dump(mode="json")``) so clients can
merge both sources by ``id``.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class FrameType(str, Enum):
    """Discriminator values carried in the ``type`` field of a frame.

    Attributes:
        JOIN: Client attaches a userId/roomId identity to its connection.
        MESSAGE: Chat message (client → server request or server → client delivery).
        ERROR: Server reports a problem to the originating connection.
    """
    JOIN = "join"
    MESSAGE = "message"
    ERROR = "error"


# =============================================================================
# Persisted records
# =============================================================================


class Message(BaseModel):
    """A persisted chat message. Immutable once created.

    Attributes:
        id: Server-assigned unique identifier (UUID).
        roomId: Room this message belongs to.
        senderId: User ID of the sender (trusted as given by the client).
        content: UTF-8 message text.
        createdAt: Server-assigned UTC timestamp, serialized as ISO-8601.
    """
    model_config = {"frozen": True}

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique message ID"
    )
    roomId: str = Field(..., description="Room ID this message belongs to")
    senderId: str = Field(..., description="User ID of the sender")
    content: str = Field(..., description="Message content")
    createdAt: datetime = Field(
        default_factory=utcnow,
        description="Creation time (UTC)"
    )


class ChatRoom(BaseModel):
    """A buyer/seller conversation about one product listing.

    The socket relay never looks these up; room ids are opaque to it.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    productId: str
    buyerId: str
    sellerId: str
    createdAt: datetime = Field(default_factory=utcnow)


class ChatRoomCreate(BaseModel):
    """Request body for POST /api/chat-rooms."""
    productId: str = Field(..., min_length=1)
    buyerId: str = Field(..., min_length=1)
    sellerId: str = Field(..., min_length=1)


# =============================================================================
# Inbound frames (client → server)
# =============================================================================


class JoinFrame(BaseModel):
    """``{"type": "join", "userId": ..., "roomId": ...}``"""
    type: Literal["join"] = "join"
    userId: str = Field(..., min_length=1)
    roomId: str = Field(..., min_length=1)


class MessageFrame(BaseModel):
    """``{"type": "message", "roomId": ..., "senderId": ..., "content": ...}``"""
    type: Literal["message"] = "message"
    roomId: str = Field(..., min_length=1)
    senderId: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


# =============================================================================
# Outbound frames (server → client)
# =============================================================================


def message_frame(message: Message) -> dict:
    """Build the ``message`` delivery frame for a persisted message."""
    return {"type": FrameType.MESSAGE.value, "message": message.model_dump(mode="json")}


def error_frame(error: str) -> dict:
    """Build an ``error`` frame."""
    return {"type": FrameType.ERROR.value, "error": error}
