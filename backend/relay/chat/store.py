"""Message Store contract and its implementations.

The Connection Manager persists every chat message through a MessageStore
before broadcasting it, and the REST glue reads history and chat rooms from
the same object. Two backends are available, selected by the ``storage``
section of the configuration:

    - InMemoryStore: process-local dicts, lost on restart (default, tests)
    - DuckDBStore: embedded DuckDB database file (or ":memory:")

Ordering:
    Within a room, get_messages_by_room() returns messages in non-decreasing
    createdAt order. Timestamps are clamped per room so a clock step backwards
    can never produce an earlier createdAt than the previous message, and
    equal timestamps keep insertion order (list order in memory, a sequence
    column in DuckDB).

Thread Safety:
    Designed for a single asyncio event loop. DuckDB queries run in the
    default executor, one at a time per store (the connection is NOT
    thread-safe for concurrent use).

Usage:
    store = get_store()
    message = await store.create_message("room-1", "user-1", "hello")
    history = await store.get_messages_by_room("room-1")
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

import duckdb

from .schemas import ChatRoom, Message, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Contracts
# =============================================================================


class MessageStore(ABC):
    """Append-only storage of chat messages keyed by room."""

    def __init__(self) -> None:
        # room_id -> createdAt of the newest message in that room
        self._last_created_at: Dict[str, datetime] = {}

    @abstractmethod
    async def create_message(self, room_id: str, sender_id: str, content: str) -> Message:
        """Assign id and createdAt, append, and return the stored record."""

    @abstractmethod
    async def get_messages_by_room(self, room_id: str) -> List[Message]:
        """Return a room's messages, oldest first, stable on equal timestamps."""

    def _next_timestamp(self, room_id: str) -> datetime:
        """Current UTC time, never earlier than the room's previous message."""
        now = utcnow()
        last = self._last_created_at.get(room_id)
        if last is not None and now < last:
            now = last
        self._last_created_at[room_id] = now
        return now


class ChatRoomStore(ABC):
    """Storage of buyer/seller chat rooms (REST glue only)."""

    @abstractmethod
    async def create_chat_room(self, product_id: str, buyer_id: str, seller_id: str) -> ChatRoom:
        ...

    @abstractmethod
    async def get_chat_room(self, room_id: str) -> Optional[ChatRoom]:
        ...

    @abstractmethod
    async def get_chat_rooms_by_user(self, user_id: str) -> List[ChatRoom]:
        ...

    @abstractmethod
    async def get_chat_room_by_product_and_buyer(
        self, product_id: str, buyer_id: str
    ) -> Optional[ChatRoom]:
        ...


class ChatStore(MessageStore, ChatRoomStore):
    """Everything the relay application needs from persistence."""

    def close(self) -> None:
        """Release backend resources. No-op by default."""


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemoryStore(ChatStore):
    """Dict-backed store. Messages are kept per room in insertion order."""

    def __init__(self) -> None:
        super().__init__()
        # room_id -> messages (append-only)
        self._messages: Dict[str, List[Message]] = {}
        # chat_room_id -> ChatRoom
        self._chat_rooms: Dict[str, ChatRoom] = {}

    async def create_message(self, room_id: str, sender_id: str, content: str) -> Message:
        message = Message(
            roomId=room_id,
            senderId=sender_id,
            content=content,
            createdAt=self._next_timestamp(room_id),
        )
        self._messages.setdefault(room_id, []).append(message)
        return message

    async def get_messages_by_room(self, room_id: str) -> List[Message]:
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(self._messages.get(room_id, []), key=lambda m: m.createdAt)

    async def create_chat_room(self, product_id: str, buyer_id: str, seller_id: str) -> ChatRoom:
        room = ChatRoom(productId=product_id, buyerId=buyer_id, sellerId=seller_id)
        self._chat_rooms[room.id] = room
        return room

    async def get_chat_room(self, room_id: str) -> Optional[ChatRoom]:
        return self._chat_rooms.get(room_id)

    async def get_chat_rooms_by_user(self, user_id: str) -> List[ChatRoom]:
        return [
            room for room in self._chat_rooms.values()
            if room.buyerId == user_id or room.sellerId == user_id
        ]

    async def get_chat_room_by_product_and_buyer(
        self, product_id: str, buyer_id: str
    ) -> Optional[ChatRoom]:
        for room in self._chat_rooms.values():
            if room.productId == product_id and room.buyerId == buyer_id:
                return room
        return None


# =============================================================================
# DuckDB implementation
# =============================================================================


_CREATE_MESSAGES_SEQ = "CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1"

_CREATE_MESSAGES = """
CREATE TABLE IF NOT EXISTS chat_messages (
    id         VARCHAR PRIMARY KEY,
    seq        BIGINT DEFAULT nextval('chat_messages_seq'),
    room_id    VARCHAR NOT NULL,
    sender_id  VARCHAR NOT NULL,
    content    VARCHAR NOT NULL,
    created_at TIMESTAMP NOT NULL
)
"""

_CREATE_CHAT_ROOMS = """
CREATE TABLE IF NOT EXISTS chat_rooms (
    id         VARCHAR PRIMARY KEY,
    product_id VARCHAR NOT NULL,
    buyer_id   VARCHAR NOT NULL,
    seller_id  VARCHAR NOT NULL,
    created_at TIMESTAMP NOT NULL
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_chat_messages_room ON chat_messages(room_id)"


def _to_db(ts: datetime) -> datetime:
    # Stored as naive UTC; DuckDB TIMESTAMPTZ would pull in pytz on read
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(ts: datetime) -> datetime:
    return ts.replace(tzinfo=timezone.utc)


class DuckDBStore(ChatStore):
    """DuckDB-backed store.

    Creates the database file and schema if they don't exist. Messages carry
    a sequence number assigned at insert time, used as the tie-breaker for
    equal ``created_at`` values.

    Queries run in the default executor so the event loop keeps serving
    other sockets while one is outstanding. An asyncio.Lock serializes them
    on the single connection; the timestamp is taken inside the same locked
    call as the insert.

    Attributes:
        _db_path: Path to the DuckDB database file, or ":memory:".
    """

    _default_db_path: str = "chat_messages.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        super().__init__()
        self._db_path = db_path or self._default_db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()
        self._initialize_db()
        logger.info("[Store] DuckDB store initialized with db=%s", self._db_path)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables, sequence and index. Idempotent."""
        conn = self._get_connection()
        conn.execute(_CREATE_MESSAGES_SEQ)
        conn.execute(_CREATE_MESSAGES)
        conn.execute(_CREATE_CHAT_ROOMS)
        conn.execute(_INDEX)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking store call in the executor, one at a time."""
        async with self._lock:
            return await asyncio.get_event_loop().run_in_executor(
                None, lambda: fn(*args)
            )

    def _next_timestamp(self, room_id: str) -> datetime:
        # Seed the clamp from disk the first time a room is written after start-up
        if room_id not in self._last_created_at:
            row = self._get_connection().execute(
                "SELECT MAX(created_at) FROM chat_messages WHERE room_id = ?",
                [room_id],
            ).fetchone()
            if row and row[0] is not None:
                self._last_created_at[room_id] = _from_db(row[0])
        return super()._next_timestamp(room_id)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def create_message(self, room_id: str, sender_id: str, content: str) -> Message:
        return await self._run(self._insert_message, room_id, sender_id, content)

    def _insert_message(self, room_id: str, sender_id: str, content: str) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            roomId=room_id,
            senderId=sender_id,
            content=content,
            createdAt=self._next_timestamp(room_id),
        )
        self._get_connection().execute(
            """
            INSERT INTO chat_messages (id, room_id, sender_id, content, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [message.id, room_id, sender_id, content, _to_db(message.createdAt)],
        )
        return message

    async def get_messages_by_room(self, room_id: str) -> List[Message]:
        rows = await self._run(self._fetchall, """
            SELECT id, room_id, sender_id, content, created_at
            FROM chat_messages
            WHERE room_id = ?
            ORDER BY created_at ASC, seq ASC
            """, [room_id])
        return [
            Message(
                id=row[0],
                roomId=row[1],
                senderId=row[2],
                content=row[3],
                createdAt=_from_db(row[4]),
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Chat rooms
    # -------------------------------------------------------------------------

    async def create_chat_room(self, product_id: str, buyer_id: str, seller_id: str) -> ChatRoom:
        room = ChatRoom(productId=product_id, buyerId=buyer_id, sellerId=seller_id)
        await self._run(self._execute, """
            INSERT INTO chat_rooms (id, product_id, buyer_id, seller_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            """, [room.id, product_id, buyer_id, seller_id, _to_db(room.createdAt)])
        return room

    async def get_chat_room(self, room_id: str) -> Optional[ChatRoom]:
        row = await self._run(
            self._fetchone,
            f"SELECT {self._ROOM_COLUMNS} FROM chat_rooms WHERE id = ?",
            [room_id],
        )
        return self._row_to_room(row) if row else None

    async def get_chat_rooms_by_user(self, user_id: str) -> List[ChatRoom]:
        rows = await self._run(self._fetchall, f"""
            SELECT {self._ROOM_COLUMNS} FROM chat_rooms
            WHERE buyer_id = ? OR seller_id = ?
            ORDER BY created_at ASC
            """, [user_id, user_id])
        return [self._row_to_room(r) for r in rows]

    async def get_chat_room_by_product_and_buyer(
        self, product_id: str, buyer_id: str
    ) -> Optional[ChatRoom]:
        row = await self._run(self._fetchone, f"""
            SELECT {self._ROOM_COLUMNS} FROM chat_rooms
            WHERE product_id = ? AND buyer_id = ?
            LIMIT 1
            """, [product_id, buyer_id])
        return self._row_to_room(row) if row else None

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    _ROOM_COLUMNS = "id, product_id, buyer_id, seller_id, created_at"

    def _execute(self, sql: str, params: list) -> None:
        self._get_connection().execute(sql, params)

    def _fetchone(self, sql: str, params: list):
        return self._get_connection().execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: list) -> list:
        return self._get_connection().execute(sql, params).fetchall()

    def _row_to_room(self, row) -> ChatRoom:
        return ChatRoom(
            id=row[0],
            productId=row[1],
            buyerId=row[2],
            sellerId=row[3],
            createdAt=_from_db(row[4]),
        )


# =============================================================================
# Process-wide store
# =============================================================================

_store: Optional[ChatStore] = None


def create_store(backend: str, db_path: Optional[str] = None) -> ChatStore:
    """Build the store named by the ``storage.backend`` setting."""
    if backend == "duckdb":
        return DuckDBStore(db_path)
    if backend == "memory":
        return InMemoryStore()
    raise ValueError(f"Unknown storage backend: {backend}")


def get_store() -> ChatStore:
    """Return the active store, falling back to a fresh InMemoryStore."""
    global _store
    if _store is None:
        _store = InMemoryStore()
        logger.info("[Store] No store configured; using in-memory store")
    return _store


def set_store(store: Optional[ChatStore]) -> None:
    """Install the process-wide store (None resets to the lazy default)."""
    global _store
    if _store is not None and _store is not store:
        _store.close()
    _store = store
