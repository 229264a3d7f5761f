"""Real-time chat module: socket relay, room registry and message store."""

from .manager import ConnectionManager, Membership, manager
from .schemas import ChatRoom, ChatRoomCreate, FrameType, Message
from .store import (
    ChatStore,
    DuckDBStore,
    InMemoryStore,
    MessageStore,
    create_store,
    get_store,
    set_store,
)

__all__ = [
    "ChatRoom",
    "ChatRoomCreate",
    "ChatStore",
    "ConnectionManager",
    "DuckDBStore",
    "FrameType",
    "InMemoryStore",
    "Membership",
    "Message",
    "MessageStore",
    "create_store",
    "get_store",
    "manager",
    "set_store",
]
