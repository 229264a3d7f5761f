"""Reconnecting WebSocket client for the chat relay.

One ChatClient owns one logical session for a (userId, roomId) pair. It keeps
at most one socket open, sends the ``join`` handshake on every open, hands
delivered messages to the caller and reconnects with exponential backoff
when the socket closes.

State machine:
    idle → connecting → open → closed → (timer) → connecting → ...

    - A close schedules a retry after ReconnectPolicy.delay_for(attempts)
      and the attempt counter is incremented when the timer fires.
    - An open resets the counter, so the retry budget applies to each
      unbroken failure streak.
    - Once the budget is spent, the terminal RECONNECT_FAILED error is
      reported and nothing else is scheduled.
    - close() cancels the pending timer and the reader task; no callback
      fires after it.

Errors never raise out of the public API. They are stored in ``error`` and
passed to ``on_error``; send_message() reports failure by returning False.

Usage:
    async with ChatClient("https://market.example", room_id, user_id,
                          on_message=view.append, on_error=view.show) as client:
        await client.wait_connected(timeout=5)
        await client.send_message("Is this still available?")
"""
import asyncio
import contextlib
import json
import logging
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

import websockets
from pydantic import ValidationError
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    ConnectionClosedOK,
    WebSocketException,
)

from relay.chat.schemas import FrameType, Message
from relay.config import get_config

from .backoff import ReconnectPolicy

logger = logging.getLogger(__name__)

CONNECTION_ERROR = "WebSocket connection error"
RECONNECT_FAILED = "Reconnection failed. Please reload the page."
SEND_FAILED = "Cannot send message. Please check your connection."

MessageCallback = Callable[[Message], Any]
ErrorCallback = Callable[[str], Any]


class ConnectionState(str, Enum):
    """Lifecycle of the client's current socket."""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


def build_ws_url(origin: str, path: str = "/ws") -> str:
    """Derive the relay endpoint from a page origin.

    ``https://`` origins map to ``wss://`` and anything else to ``ws://``.

    Example:
        >>> build_ws_url("https://market.example:8443/chat/42")
        'wss://market.example:8443/ws'
    """
    parts = urlsplit(origin)
    if not parts.netloc:
        raise ValueError(f"Origin has no host: {origin!r}")
    scheme = "wss" if parts.scheme in ("https", "wss") else "ws"
    return f"{scheme}://{parts.netloc}{path}"


class ChatClient:
    """Reconnecting chat session for one user in one room.

    Args:
        origin: Page origin the relay is served from (http(s)://host[:port]).
        room_id: Room to join on every open.
        user_id: Identity sent in ``join`` and as ``senderId``.
        on_message: Called with every delivered Message, including echoes
            of this client's own sends. The caller de-duplicates by id.
        on_error: Called with every error text surfaced by the session.
        policy: Reconnect schedule. Defaults to the ``client`` settings.
        ws_path: Endpoint path. Defaults to ``server.ws_path``.
        connector: Coroutine function opening a socket for a URL.
            Defaults to ``websockets.connect``.
    """

    def __init__(
        self,
        origin: str,
        room_id: str,
        user_id: str,
        on_message: Optional[MessageCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        policy: Optional[ReconnectPolicy] = None,
        ws_path: Optional[str] = None,
        connector: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.room_id = room_id
        self.user_id = user_id
        self.url = build_ws_url(origin, ws_path or get_config().server.ws_path)
        self.policy = policy or ReconnectPolicy.from_settings()
        self.on_message = on_message
        self.on_error = on_error

        self.state = ConnectionState.IDLE
        self.error: Optional[str] = None
        self.reconnect_attempts = 0

        self._connector = connector or websockets.connect
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._connected = asyncio.Event()
        self._torn_down = False

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def is_closed(self) -> bool:
        """True once the owner has torn the session down."""
        return self._torn_down

    # =========================================================================
    # Public API
    # =========================================================================

    def connect(self) -> None:
        """Start opening a socket. Must be called from a running event loop."""
        if self._torn_down:
            return
        if self._task is not None and not self._task.done():
            return
        self.state = ConnectionState.CONNECTING
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait until the socket is open. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def send_message(self, content: str) -> bool:
        """Send a chat message to the room.

        Nothing is queued: when the socket is not open the message is
        dropped, the error is set and False is returned so the caller can
        keep the draft.

        Returns:
            True if the frame was handed to an open socket.
        """
        if self._ws is not None and self.state is ConnectionState.OPEN:
            sent = await self._send_frame({
                "type": FrameType.MESSAGE.value,
                "roomId": self.room_id,
                "senderId": self.user_id,
                "content": content,
            })
            if sent:
                return True

        logger.error("[Client] WebSocket is not connected")
        self._report_error(SEND_FAILED)
        return False

    async def close(self) -> None:
        """Tear the session down: cancel retries, close the socket, stop reading."""
        self._torn_down = True

        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"[Client] Error while closing socket: {e}")

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self.state = ConnectionState.CLOSED
        self._connected.clear()
        logger.info(f"[Client] Session closed for user {self.user_id} in room {self.room_id}")

    async def __aenter__(self) -> "ChatClient":
        self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # =========================================================================
    # Socket lifecycle
    # =========================================================================

    async def _run(self) -> None:
        """Open one socket and read it until it closes."""
        try:
            ws = await self._connector(self.url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error(f"[Client] Connection to {self.url} failed: {e}")
            self._report_error(CONNECTION_ERROR)
            self._handle_close()
            return

        if self._torn_down:
            await ws.close()
            return

        self._ws = ws
        await self._handle_open()
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except ConnectionClosedOK as e:
            logger.info(f"[Client] Connection closed: {e}")
        except ConnectionClosedError as e:
            logger.warning(f"[Client] Connection lost: {e}")
            self._report_error(CONNECTION_ERROR)
        finally:
            self._ws = None
        self._handle_close()

    async def _handle_open(self) -> None:
        logger.info(f"[Client] Connected to {self.url}")
        self.state = ConnectionState.OPEN
        self.error = None
        self.reconnect_attempts = 0
        self._connected.set()
        await self._send_frame({
            "type": FrameType.JOIN.value,
            "userId": self.user_id,
            "roomId": self.room_id,
        })

    def _handle_close(self) -> None:
        """Schedule the next retry, or give up once the budget is spent."""
        self._connected.clear()
        if self._torn_down:
            return
        self.state = ConnectionState.CLOSED
        logger.info(f"[Client] Disconnected from {self.url}")

        if not self.policy.allows(self.reconnect_attempts):
            logger.error(
                f"[Client] Giving up after {self.reconnect_attempts} reconnect attempts"
            )
            self._report_error(RECONNECT_FAILED)
            return

        delay = self.policy.delay_for(self.reconnect_attempts)
        logger.info(
            f"[Client] Reconnecting in {delay:.1f}s "
            f"(attempt {self.reconnect_attempts + 1}/{self.policy.max_attempts})"
        )
        self._reconnect_handle = asyncio.get_running_loop().call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._torn_down:
            return
        self.reconnect_attempts += 1
        self.connect()

    # =========================================================================
    # Frames
    # =========================================================================

    def _handle_frame(self, raw) -> None:
        """Dispatch one inbound frame. Malformed data is logged and dropped."""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError, RecursionError) as e:
            logger.error(f"[Client] WebSocket message parse error: {e}")
            return
        if not isinstance(data, dict):
            logger.error("[Client] WebSocket frame is not a JSON object")
            return

        frame_type = data.get("type")
        if frame_type == FrameType.MESSAGE.value:
            try:
                message = Message.model_validate(data.get("message"))
            except ValidationError as e:
                logger.error(f"[Client] Invalid message payload: {e}")
                return
            if self.on_message is not None and not self._torn_down:
                self._invoke(self.on_message, message)
        elif frame_type == FrameType.ERROR.value:
            self._report_error(str(data.get("error", "")))

    async def _send_frame(self, frame: dict) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(frame))
            return True
        except ConnectionClosed as e:
            logger.warning(f"[Client] Send failed, connection closed: {e}")
            return False

    def _report_error(self, error: str) -> None:
        if self._torn_down:
            return
        self.error = error
        if self.on_error is not None:
            self._invoke(self.on_error, error)

    def _invoke(self, callback: Callable[[Any], Any], arg: Any) -> None:
        # A failing callback must not kill the reader task
        try:
            callback(arg)
        except Exception:
            logger.exception(f"[Client] Callback {callback!r} raised")
